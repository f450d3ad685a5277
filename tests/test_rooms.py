import asyncio

from rooms import RoomIndex


def test_add_and_snapshot():
    async def scenario():
        index = RoomIndex()
        await index.add(7, "s1")
        await index.add(7, "s2")
        await index.add(7, "s1")
        return await index.members_of(7)

    assert asyncio.run(scenario()) == frozenset({"s1", "s2"})


def test_snapshot_is_not_affected_by_later_changes():
    async def scenario():
        index = RoomIndex()
        await index.add(7, "s1")
        snapshot = await index.members_of(7)
        await index.add(7, "late")
        return snapshot, await index.members_of(7)

    snapshot, current = asyncio.run(scenario())
    assert snapshot == frozenset({"s1"})
    assert current == frozenset({"s1", "late"})


def test_remove_missing_session_is_noop():
    async def scenario():
        index = RoomIndex()
        first = await index.remove(7, "ghost")
        await index.add(7, "s1")
        second = await index.remove(7, "s1")
        third = await index.remove(7, "s1")
        return first, second, third, await index.members_of(7)

    assert asyncio.run(scenario()) == (False, True, False, frozenset())


def test_concurrent_joins_and_leaves_keep_set_consistent():
    async def scenario():
        index = RoomIndex()
        await asyncio.gather(*(index.add(1, f"s{i}") for i in range(50)))
        await asyncio.gather(*(index.remove(1, f"s{i}") for i in range(0, 50, 2)))
        await asyncio.gather(*(index.remove(1, f"s{i}") for i in range(0, 50, 2)))
        return await index.members_of(1)

    assert asyncio.run(scenario()) == frozenset(f"s{i}" for i in range(1, 50, 2))


def test_remove_everywhere():
    async def scenario():
        index = RoomIndex()
        await index.add(1, "s1")
        await index.add(2, "s1")
        await index.add(2, "s2")
        await index.remove_everywhere("s1", {1, 2, 3})
        return await index.members_of(1), await index.members_of(2)

    assert asyncio.run(scenario()) == (frozenset(), frozenset({"s2"}))
