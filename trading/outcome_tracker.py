"""Interpret inclusion events of a submitted forced batch."""

from __future__ import annotations

import logging
from collections.abc import Sequence

from trading.recovery_types import (
    ControllerState,
    Finalized,
    InBlock,
    ItemEvent,
    ItemEventKind,
    RecoveryAction,
    StatusSubscription,
    StatusUpdate,
    origin_label,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_FAILURE_COOLDOWN = 300


class OutcomeTracker:
    """Applies batch item outcomes to the shared controller state.

    Item events arrive in submission order, so the n-th ItemCompleted/ItemFailed
    refers to the n-th action of the batch.
    """

    def __init__(self, state: ControllerState, *, batch_failure_cooldown: int = DEFAULT_BATCH_FAILURE_COOLDOWN) -> None:
        self.state = state
        self.batch_failure_cooldown = int(batch_failure_cooldown)

    async def track(self, batch: Sequence[RecoveryAction], subscription: StatusSubscription) -> None:
        try:
            async for event in subscription:
                if isinstance(event, InBlock):
                    logger.info("BATCH_IN_BLOCK block=%s events=%s", event.block_hash, len(event.item_events))
                    self.apply_item_events(batch, event.item_events)
                elif isinstance(event, Finalized):
                    logger.info("BATCH_FINALIZED block=%s", event.block_hash)
                    return
                elif isinstance(event, StatusUpdate):
                    logger.info("BATCH_STATUS status=%s", event.status)
                else:
                    logger.debug("BATCH_STATUS_UNKNOWN event=%r", event)
        except Exception:
            logger.exception("Batch tracking error")
        finally:
            subscription.unsubscribe()

    def apply_item_events(self, batch: Sequence[RecoveryAction], item_events: Sequence[ItemEvent]) -> None:
        cursor = 0
        for event in item_events:
            if event.kind in (ItemEventKind.ITEM_COMPLETED, ItemEventKind.ITEM_FAILED):
                if cursor >= len(batch):
                    logger.warning(
                        "BATCH_ITEM_OVERFLOW kind=%s index=%s batch_size=%s",
                        event.kind.value,
                        cursor,
                        len(batch),
                    )
                    continue
                action = batch[cursor]
                cursor += 1
                if event.kind is ItemEventKind.ITEM_COMPLETED:
                    self.state.items_completed += 1
                    logger.info(
                        "ITEM_COMPLETED origin=%s page=%s call=%s",
                        origin_label(action.origin),
                        action.page_index,
                        action.fingerprint,
                    )
                else:
                    self.state.ban(action.fingerprint)
                    self.state.items_failed += 1
                    logger.warning(
                        "ITEM_FAILED origin=%s page=%s call=%s error=%s banned=%s",
                        origin_label(action.origin),
                        action.page_index,
                        action.fingerprint,
                        event.payload,
                        len(self.state.banned),
                    )
            elif event.kind is ItemEventKind.EXTRINSIC_SUCCESS:
                logger.info("BATCH_EXTRINSIC_SUCCESS")
            elif event.kind is ItemEventKind.EXTRINSIC_FAILED:
                self.state.cooldown = self.batch_failure_cooldown
                self.state.batch_failures += 1
                logger.warning(
                    "BATCH_EXTRINSIC_FAILED error=%s cooldown=%s",
                    event.payload,
                    self.state.cooldown,
                )
            else:
                logger.info("BATCH_EVENT %s.%s: %s", event.section, event.method, event.payload)
