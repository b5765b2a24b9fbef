"""Block-driven controller for forced execution of overweight messages."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, Sequence
from typing import Any

import config
from monitor.page_loader import load_pages
from trading.batch_builder import DEFAULT_MAX_BATCH_SIZE, action_factory, build_batch
from trading.outcome_tracker import DEFAULT_BATCH_FAILURE_COOLDOWN, OutcomeTracker
from trading.recovery_types import (
    ChainGateway,
    ControllerState,
    DecodeError,
    RecoveryAction,
    WeightLimit,
    origin_label,
)
from utils.decision_log import BlockDecisionWriter

logger = logging.getLogger(__name__)

DEFAULT_POST_SUBMIT_COOLDOWN = 4
DEFAULT_SERVICE_HEAD_COOLDOWN = 4


class RecoveryController:
    """Runs one Idle -> Processing -> Idle transition per new block.

    Notifications arriving while a block is processing are dropped; queue pages
    persist until drained, so the next notification observes them again.
    """

    def __init__(
        self,
        gateway: ChainGateway,
        *,
        weight_limit: WeightLimit,
        signer: Any = None,
        state: ControllerState | None = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        post_submit_cooldown: int = DEFAULT_POST_SUBMIT_COOLDOWN,
        service_head_cooldown: int = DEFAULT_SERVICE_HEAD_COOLDOWN,
        batch_failure_cooldown: int = DEFAULT_BATCH_FAILURE_COOLDOWN,
        dry_run: bool = False,
        decision_writer: BlockDecisionWriter | None = None,
    ) -> None:
        self.gateway = gateway
        self.signer = signer
        self.weight_limit = weight_limit
        self.state = state if state is not None else ControllerState()
        self.max_batch_size = max(1, int(max_batch_size))
        self.post_submit_cooldown = int(post_submit_cooldown)
        self.service_head_cooldown = int(service_head_cooldown)
        self.dry_run = bool(dry_run)
        self.decision_writer = decision_writer
        self.tracker = OutcomeTracker(self.state, batch_failure_cooldown=batch_failure_cooldown)
        self._make_action = action_factory(gateway)
        self._block_tasks: set[asyncio.Task[str]] = set()
        self._tracking_tasks: set[asyncio.Task[None]] = set()

    @classmethod
    def from_config(cls, gateway: ChainGateway, signer: Any = None) -> "RecoveryController":
        return cls(
            gateway,
            signer=signer,
            weight_limit=WeightLimit(ref_time=config.REF_TIME, proof_size=config.PROOF_SIZE),
            max_batch_size=config.BATCH_LIMIT,
            post_submit_cooldown=config.POST_SUBMIT_COOLDOWN_BLOCKS,
            service_head_cooldown=config.SERVICE_HEAD_COOLDOWN_BLOCKS,
            batch_failure_cooldown=config.BATCH_FAILURE_COOLDOWN_BLOCKS,
            dry_run=config.DRY_RUN,
            decision_writer=BlockDecisionWriter(),
        )

    async def run(self, blocks: AsyncIterable[str]) -> None:
        async for block_ref in blocks:
            self.dispatch(block_ref)

    def dispatch(self, block_ref: str) -> asyncio.Task[str]:
        # Each notification gets its own task so an overlapping block hits the busy guard.
        task = asyncio.create_task(self.on_new_block(block_ref))
        self._block_tasks.add(task)
        task.add_done_callback(self._block_tasks.discard)
        return task

    async def on_new_block(self, block_ref: str) -> str:
        if self.state.processing:
            self.state.blocks_skipped_busy += 1
            logger.info("BLOCK_SKIP_BUSY block=%s", block_ref)
            self._record(block_ref, stage="guard", decision="skip", reason="busy")
            return "busy"

        self.state.processing = True
        stage, decision, reason = "error", "skip", "block_error"
        details: dict[str, Any] = {}
        try:
            self.state.cooldown -= 1
            self.state.blocks_seen += 1
            self.state.last_block = str(block_ref)
            logger.info("BLOCK_PROCESS block=%s cooldown=%s", block_ref, self.state.cooldown)
            stage, decision, reason = await self._process_block(block_ref, details)
        except DecodeError:
            stage, decision, reason = "load_pages", "skip", "decode_error"
            logger.exception("BLOCK_ERROR block=%s reason=decode_error", block_ref)
        except Exception:
            logger.exception("BLOCK_ERROR block=%s", block_ref)
        finally:
            self.state.processing = False
        self._record(block_ref, stage=stage, decision=decision, reason=reason, **details)
        return reason

    async def _process_block(self, block_ref: str, details: dict[str, Any]) -> tuple[str, str, str]:
        head = await self.gateway.query_service_head()
        if head is not None:
            self.state.cooldown = self.service_head_cooldown
            details["service_head"] = str(head)
            logger.info("SERVICE_HEAD_ACTIVE block=%s head=%s cooldown=%s", block_ref, head, self.state.cooldown)
            return "service_head", "skip", "service_head_active"

        if self.state.cooldown > 0:
            logger.info("COOLDOWN_ACTIVE block=%s cooldown=%s", block_ref, self.state.cooldown)
            return "cooldown", "skip", "cooldown"

        pages = load_pages(await self.gateway.query_queue_pages())
        details["pages"] = len(pages)
        if not pages:
            logger.info("NO_PAGES block=%s", block_ref)
            return "load_pages", "skip", "no_pages"

        batch = await build_batch(
            pages,
            self.state.banned,
            weight_limit=self.weight_limit,
            make_action=self._make_action,
            max_batch_size=self.max_batch_size,
        )
        details["batch_size"] = len(batch)
        if not batch:
            logger.info("BATCH_EMPTY block=%s pages=%s banned=%s", block_ref, len(pages), len(self.state.banned))
            return "build_batch", "skip", "empty_batch"

        outcome = await self.submit_batch(batch)
        self.state.cooldown = self.post_submit_cooldown
        return "submit", ("submit" if outcome != "submit_failed" else "skip"), outcome

    async def submit_batch(self, batch: Sequence[RecoveryAction]) -> str:
        logger.info("BATCH_SUBMIT size=%s dry_run=%s", len(batch), self.dry_run)
        if self.dry_run:
            for action in batch:
                logger.info(
                    "BATCH_DRY_RUN origin=%s page=%s call=%s",
                    origin_label(action.origin),
                    action.page_index,
                    action.fingerprint,
                )
            return "dry_run"

        try:
            batch_call = await self.gateway.build_batch_call([action.call for action in batch])
            subscription = await self.gateway.submit_and_track(batch_call, self.signer)
        except Exception:
            logger.exception("BATCH_SUBMIT_FAILED size=%s", len(batch))
            return "submit_failed"

        self.state.submissions += 1
        task = asyncio.create_task(self.tracker.track(list(batch), subscription))
        self._tracking_tasks.add(task)
        task.add_done_callback(self._tracking_tasks.discard)
        return "submitted"

    async def drain(self) -> None:
        """Wait for in-flight block processing to finish."""
        pending = list(self._block_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def wait_tracking(self) -> None:
        """Wait until every submitted batch has reached a terminal status."""
        pending = list(self._tracking_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def shutdown(self) -> None:
        await self.drain()
        tracking = list(self._tracking_tasks)
        for task in tracking:
            task.cancel()
        if tracking:
            await asyncio.gather(*tracking, return_exceptions=True)

    def _record(self, block_ref: str, *, stage: str, decision: str, reason: str, **details: Any) -> None:
        if self.decision_writer is None:
            return
        self.decision_writer.write(
            {
                "block": str(block_ref),
                "decision_stage": stage,
                "decision": decision,
                "reason": reason,
                "cooldown": self.state.cooldown,
                "banned_count": len(self.state.banned),
                **details,
            }
        )
