"""Types shared by the recovery engine and the chain gateway."""

from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol, Union


class RecoveryBotError(RuntimeError):
    """Base class for recovery bot failures."""


class DecodeError(RecoveryBotError):
    """Raised when a queue storage entry cannot be decoded."""


class SubmissionError(RecoveryBotError):
    """Raised when a batch cannot be built, signed or submitted."""


class ConnectivityError(RecoveryBotError):
    """Raised when the chain endpoint is unreachable."""


@dataclass(frozen=True)
class HereOrigin:
    """Messages enqueued by the local chain itself."""


@dataclass(frozen=True)
class ParentOrigin:
    # Relay-chain origins decode as bare "Parent"; some runtimes attach an index.
    index: int | None = None


@dataclass(frozen=True)
class SiblingOrigin:
    index: int


OriginRef = Union[HereOrigin, ParentOrigin, SiblingOrigin]


def origin_from_raw(raw: Any) -> OriginRef:
    """Parse a decoded `AggregateMessageOrigin` value into an origin ref."""
    if isinstance(raw, str):
        variant = raw.strip().lower()
        if variant == "here":
            return HereOrigin()
        if variant == "parent":
            return ParentOrigin()
        raise DecodeError(f"unsupported message origin: {raw!r}")
    if not isinstance(raw, Mapping) or len(raw) != 1:
        raise DecodeError(f"unsupported message origin: {raw!r}")
    ((variant, payload),) = raw.items()
    variant = str(variant).strip().lower()
    try:
        if variant == "here" and payload is None:
            return HereOrigin()
        if variant == "parent":
            return ParentOrigin(index=None if payload is None else int(payload))
        if variant == "sibling":
            return SiblingOrigin(index=int(payload))
    except (TypeError, ValueError) as exc:
        raise DecodeError(f"invalid {variant} origin payload: {payload!r}") from exc
    raise DecodeError(f"unsupported message origin variant: {variant!r}")


def origin_call_arg(origin: OriginRef) -> Any:
    if isinstance(origin, HereOrigin):
        return "Here"
    if isinstance(origin, ParentOrigin):
        return "Parent" if origin.index is None else {"Parent": origin.index}
    if isinstance(origin, SiblingOrigin):
        return {"Sibling": origin.index}
    raise TypeError(f"unknown origin type: {type(origin).__name__}")


def origin_label(origin: OriginRef) -> str:
    if isinstance(origin, HereOrigin):
        return "Here"
    if isinstance(origin, ParentOrigin):
        return "Parent" if origin.index is None else f"Parent({origin.index})"
    if isinstance(origin, SiblingOrigin):
        return f"Sibling({origin.index})"
    raise TypeError(f"unknown origin type: {type(origin).__name__}")


@dataclass(frozen=True)
class QueuePage:
    origin: OriginRef
    page_index: int
    remaining: int


@dataclass(frozen=True)
class WeightLimit:
    ref_time: int
    proof_size: int

    def as_call_arg(self) -> dict[str, int]:
        return {"ref_time": int(self.ref_time), "proof_size": int(self.proof_size)}


@dataclass(frozen=True)
class RecoveryAction:
    origin: OriginRef
    page_index: int
    sub_index: int
    weight_limit: WeightLimit
    fingerprint: str
    call: Any = field(default=None, compare=False, repr=False)


class ItemEventKind(str, Enum):
    ITEM_COMPLETED = "item_completed"
    ITEM_FAILED = "item_failed"
    EXTRINSIC_SUCCESS = "extrinsic_success"
    EXTRINSIC_FAILED = "extrinsic_failed"
    OTHER = "other"


_EVENT_KIND_BY_METHOD: dict[str, ItemEventKind] = {
    "ItemCompleted": ItemEventKind.ITEM_COMPLETED,
    "ItemFailed": ItemEventKind.ITEM_FAILED,
    "ExtrinsicSuccess": ItemEventKind.EXTRINSIC_SUCCESS,
    "ExtrinsicFailed": ItemEventKind.EXTRINSIC_FAILED,
}


def event_kind_for_method(method: str) -> ItemEventKind:
    return _EVENT_KIND_BY_METHOD.get(str(method or ""), ItemEventKind.OTHER)


@dataclass(frozen=True)
class ItemEvent:
    kind: ItemEventKind
    section: str = ""
    method: str = ""
    payload: Any = None


@dataclass(frozen=True)
class InBlock:
    block_hash: str
    item_events: tuple[ItemEvent, ...] = ()


@dataclass(frozen=True)
class Finalized:
    block_hash: str


@dataclass(frozen=True)
class StatusUpdate:
    status: str


StatusEvent = Union[InBlock, Finalized, StatusUpdate]


class Subscription(Protocol):
    def unsubscribe(self) -> None: ...


class BlockSubscription(Subscription, Protocol):
    def __aiter__(self) -> AsyncIterator[str]: ...


class StatusSubscription(Subscription, Protocol):
    def __aiter__(self) -> AsyncIterator[StatusEvent]: ...


class ChainGateway(Protocol):
    async def subscribe_new_blocks(self) -> BlockSubscription: ...

    async def query_service_head(self) -> Any | None: ...

    async def query_queue_pages(self) -> Sequence[tuple[Any, Any]]: ...

    async def build_recovery_call(
        self, origin: OriginRef, page_index: int, sub_index: int, weight_limit: WeightLimit
    ) -> Any: ...

    def fingerprint(self, call: Any) -> str: ...

    async def build_batch_call(self, calls: Sequence[Any]) -> Any: ...

    async def submit_and_track(self, call: Any, signer: Any) -> StatusSubscription: ...

    async def disconnect(self) -> None: ...


@dataclass
class ControllerState:
    """Process-lifetime state shared between the controller and outcome trackers."""

    cooldown: int = 0
    banned: set[str] = field(default_factory=set)
    processing: bool = False
    last_block: str = ""
    blocks_seen: int = 0
    blocks_skipped_busy: int = 0
    submissions: int = 0
    items_completed: int = 0
    items_failed: int = 0
    batch_failures: int = 0

    def ban(self, fingerprint: str) -> None:
        self.banned.add(fingerprint)

    def is_banned(self, fingerprint: str) -> bool:
        return fingerprint in self.banned

    def snapshot(self) -> dict[str, Any]:
        return {
            "cooldown": int(self.cooldown),
            "banned_count": len(self.banned),
            "processing": bool(self.processing),
            "last_block": self.last_block,
            "blocks_seen": self.blocks_seen,
            "blocks_skipped_busy": self.blocks_skipped_busy,
            "submissions": self.submissions,
            "items_completed": self.items_completed,
            "items_failed": self.items_failed,
            "batch_failures": self.batch_failures,
        }
