from __future__ import annotations

import unittest

from trading.batch_builder import RECOVERY_SUB_INDEX, build_batch, eligible_pages
from trading.recovery_types import (
    OriginRef,
    ParentOrigin,
    QueuePage,
    RecoveryAction,
    SiblingOrigin,
    WeightLimit,
    origin_label,
)

WEIGHT = WeightLimit(ref_time=1_000_000_000, proof_size=100_000)


async def _make_action(origin: OriginRef, page_index: int, sub_index: int, weight_limit: WeightLimit) -> RecoveryAction:
    fingerprint = f"{origin_label(origin)}:{page_index}:{sub_index}:{weight_limit.ref_time}:{weight_limit.proof_size}"
    return RecoveryAction(
        origin=origin,
        page_index=page_index,
        sub_index=sub_index,
        weight_limit=weight_limit,
        fingerprint=fingerprint,
        call=("execute_overweight", fingerprint),
    )


def _page(para: int, page_index: int, remaining: int) -> QueuePage:
    return QueuePage(origin=SiblingOrigin(para), page_index=page_index, remaining=remaining)


class BatchBuilderTests(unittest.IsolatedAsyncioTestCase):
    async def _build(self, pages: list[QueuePage], banned: set[str] | None = None, limit: int = 10) -> list[RecoveryAction]:
        return await build_batch(
            pages,
            banned or set(),
            weight_limit=WEIGHT,
            make_action=_make_action,
            max_batch_size=limit,
        )

    async def test_pages_without_remaining_messages_give_empty_batch(self) -> None:
        for count in (0, 1, 5, 30):
            with self.subTest(count=count):
                pages = [_page(2000 + i, i, 0) for i in range(count)]
                self.assertEqual(await self._build(pages), [])

    async def test_only_pages_with_remaining_messages_are_selected(self) -> None:
        pages = [_page(2000, 0, 0), _page(2000, 1, 3), QueuePage(ParentOrigin(), 4, 1), _page(2001, 0, 0)]
        batch = await self._build(pages)
        self.assertEqual([(a.origin, a.page_index) for a in batch], [(SiblingOrigin(2000), 1), (ParentOrigin(), 4)])
        self.assertEqual(eligible_pages(pages), [pages[1], pages[2]])

    async def test_actions_carry_weight_limit_and_first_sub_index(self) -> None:
        batch = await self._build([_page(2000, 9, 1)])
        self.assertEqual(len(batch), 1)
        self.assertEqual(batch[0].weight_limit, WEIGHT)
        self.assertEqual(batch[0].sub_index, RECOVERY_SUB_INDEX)
        self.assertEqual(batch[0].sub_index, 0)

    async def test_banned_fingerprints_are_never_included(self) -> None:
        pages = [_page(2000, i, 1) for i in range(6)]
        all_prints = [a.fingerprint for a in await self._build(pages)]
        for banned_index in range(len(all_prints)):
            with self.subTest(banned_index=banned_index):
                banned = {all_prints[banned_index], all_prints[0]}
                batch = await self._build(pages, banned=banned)
                self.assertTrue(all(a.fingerprint not in banned for a in batch))
                self.assertEqual(len(batch), len(pages) - len(banned))

    async def test_all_banned_gives_empty_batch(self) -> None:
        pages = [_page(2000, i, 1) for i in range(3)]
        banned = {a.fingerprint for a in await self._build(pages)}
        self.assertEqual(await self._build(pages, banned=banned), [])

    async def test_batch_size_never_exceeds_limit(self) -> None:
        for eligible_count, limit in ((12, 10), (3, 10), (10, 10), (25, 1), (7, 3)):
            with self.subTest(eligible=eligible_count, limit=limit):
                pages = [_page(2000, i, 1) for i in range(eligible_count)]
                batch = await self._build(pages, limit=limit)
                self.assertEqual(len(batch), min(eligible_count, limit))

    async def test_twelve_eligible_pages_keep_first_ten_in_page_order(self) -> None:
        pages = [_page(3000 - i, i, 1) for i in range(12)]
        batch = await self._build(pages, limit=10)
        self.assertEqual([a.page_index for a in batch], list(range(10)))
        self.assertEqual([a.origin for a in batch], [SiblingOrigin(3000 - i) for i in range(10)])

    async def test_banned_pages_do_not_use_up_batch_slots(self) -> None:
        pages = [_page(2000, i, 1) for i in range(5)]
        first = (await self._build(pages, limit=2))[0].fingerprint
        batch = await self._build(pages, banned={first}, limit=2)
        self.assertEqual([a.page_index for a in batch], [1, 2])

    async def test_non_positive_limit_is_clamped_to_one(self) -> None:
        pages = [_page(2000, i, 1) for i in range(4)]
        self.assertEqual(len(await self._build(pages, limit=0)), 1)


if __name__ == "__main__":
    unittest.main()
