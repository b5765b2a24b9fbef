"""Eligibility filtering and batch construction for forced execution."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Collection, Iterable

from trading.recovery_types import (
    ChainGateway,
    OriginRef,
    QueuePage,
    RecoveryAction,
    WeightLimit,
    origin_label,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_BATCH_SIZE = 10
RECOVERY_SUB_INDEX = 0

ActionFactory = Callable[[OriginRef, int, int, WeightLimit], Awaitable[RecoveryAction]]


def action_factory(gateway: ChainGateway) -> ActionFactory:
    """Bind a gateway so the builder can create fingerprinted recovery actions."""

    async def _make(origin: OriginRef, page_index: int, sub_index: int, weight_limit: WeightLimit) -> RecoveryAction:
        call = await gateway.build_recovery_call(origin, page_index, sub_index, weight_limit)
        return RecoveryAction(
            origin=origin,
            page_index=page_index,
            sub_index=sub_index,
            weight_limit=weight_limit,
            fingerprint=gateway.fingerprint(call),
            call=call,
        )

    return _make


def eligible_pages(pages: Iterable[QueuePage]) -> list[QueuePage]:
    return [page for page in pages if int(page.remaining) > 0]


async def build_batch(
    pages: Iterable[QueuePage],
    banned: Collection[str],
    *,
    weight_limit: WeightLimit,
    make_action: ActionFactory,
    max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
) -> list[RecoveryAction]:
    limit = max(1, int(max_batch_size))
    batch: list[RecoveryAction] = []
    for page in eligible_pages(pages):
        if len(batch) >= limit:
            break
        logger.info(
            "BATCH_CANDIDATE origin=%s page=%s remaining=%s",
            origin_label(page.origin),
            page.page_index,
            page.remaining,
        )
        action = await make_action(page.origin, page.page_index, RECOVERY_SUB_INDEX, weight_limit)
        if action.fingerprint in banned:
            logger.info(
                "BATCH_SKIP_BANNED origin=%s page=%s call=%s",
                origin_label(page.origin),
                page.page_index,
                action.fingerprint,
            )
            continue
        batch.append(action)
    return batch
