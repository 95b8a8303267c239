import asyncio

import pytest

from conftest import VIEWER, InMemoryDocumentStore
from feed.cacheManager import FeedCache
from feed.config import MAX_LOAD_ATTEMPTS
from feed.errors import AuthenticationRequired, FeedUnavailable
from feed.events import EventChannel, FeedEvent, FeedEventType
from feed.invalidationHandler import FeedCacheInvalidator


def ids(page):
    return [entry.post_id for entry in page.entries]


def max_run(authors, author):
    longest = current = 0
    for name in authors:
        current = current + 1 if name == author else 0
        longest = max(longest, current)
    return longest


def test_end_to_end_initial_load_then_pagination(world):
    world.add_collection("A", owner_id="owner-a")
    world.add_collection("B", owner_id="owner-b")
    for hours in (1, 3, 5, 7):
        world.add_post("A", "x", hours_ago=hours)
    world.add_post("A", "w", hours_ago=2)
    for author, hours in (("y", 4), ("z", 6), ("v", 8)):
        world.add_post("B", author, hours_ago=hours)
    aggregator = world.make_aggregator(page_size=6)

    async def scenario():
        first = await aggregator.load_initial(VIEWER)
        more = await aggregator.load_more(VIEWER, first.cursor)
        return first, more

    first, more = asyncio.run(scenario())

    assert len(first.entries) == 6
    assert first.has_more
    assert len(set(ids(first))) == 6
    assert max_run([entry.author_id for entry in first.entries], "x") <= 2
    assert first.cursor == first.entries[-1].created_at

    assert all(entry.created_at < first.cursor for entry in more.entries)
    timestamps = [entry.created_at for entry in more.entries]
    assert timestamps == sorted(timestamps, reverse=True)
    assert not set(ids(more)) & set(ids(first))


def test_initial_load_only_fans_out_to_first_collections(world):
    for index in range(12):
        world.add_collection(f"c{index}")
        world.add_post(f"c{index}", f"author{index}", hours_ago=index + 1)
    aggregator = world.make_aggregator()

    page = asyncio.run(aggregator.load_initial(VIEWER))

    queried = {call[0] for call in world.store.calls}
    assert queried == {f"c{index}" for index in range(10)}
    assert all(call[1] == 10 for call in world.store.calls)
    assert {entry.collection.id for entry in page.entries} <= queried
    assert page.has_more


def test_initial_load_applies_dedup_and_visibility(world):
    world.add_collection("open", owner_id="olga")
    world.add_collection("shared", owner_id="olga")
    world.add_collection("hidden", owner_id="olga")
    world.add_collection("theirs", owner_id="trent")
    world.add_post("open", "alice", hours_ago=1, post_id="dup")
    world.add_post("shared", "alice", hours_ago=1, post_id="dup")
    world.add_post("open", "mallory", hours_ago=2, post_id="blocked-author")
    world.add_post("open", "bob", hours_ago=3, post_id="secret")
    world.add_post("open", "bob", hours_ago=4, post_id="visible")
    world.add_post("hidden", "bob", hours_ago=1, post_id="in-hidden")
    world.add_post("theirs", "bob", hours_ago=1, post_id="blocked-owner")
    world.set_profile(
        blocked_users=frozenset({"mallory"}),
        blocked_by_users=frozenset({"trent"}),
        blocked_collection_ids=frozenset({"hidden"}),
        hidden_post_ids=frozenset({"secret"})
    )

    page = asyncio.run(world.make_aggregator().load_initial(VIEWER))

    assert sorted(ids(page)) == ["dup", "visible"]
    assert "hidden" not in {call[0] for call in world.store.calls}


def test_private_collection_contributes_nothing(world):
    world.add_collection("private", is_public=False)
    world.add_collection("public")
    world.add_post("private", "a", hours_ago=1)
    world.add_post("public", "b", hours_ago=1, post_id="ok")

    page = asyncio.run(world.make_aggregator().load_initial(VIEWER))

    assert ids(page) == ["ok"]


def test_partial_failure_still_serves_other_collections(world):
    for name in ("good", "bad", "fine"):
        world.add_collection(name)
        world.add_post(name, f"author-{name}", hours_ago=1, post_id=f"{name}-post")
    world.store.failing.add("bad")

    page = asyncio.run(world.make_aggregator().load_initial(VIEWER))

    assert sorted(ids(page)) == ["fine-post", "good-post"]


def test_future_dated_posts_are_ranked_first(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=-3, post_id="scheduled")
    world.add_post("c1", "b", hours_ago=200, post_id="ancient")

    page = asyncio.run(world.make_aggregator().load_initial(VIEWER))

    assert ids(page) == ["scheduled", "ancient"]


def test_load_more_reports_exhaustion(world):
    world.add_collection("c1")
    for index, hours in enumerate((1, 2, 3)):
        world.add_post("c1", f"a{index}", hours_ago=hours)
    aggregator = world.make_aggregator(page_size=2)

    async def scenario():
        first = await aggregator.load_initial(VIEWER)
        more = await aggregator.load_more(VIEWER)
        return first, more

    first, more = asyncio.run(scenario())

    assert first.has_more
    assert not more.has_more
    assert all(entry.created_at < first.cursor for entry in more.entries)
    cached = aggregator.cache.get()
    assert [e.post_id for e in cached.entries] == ids(first) + ids(more)


def test_load_more_fans_out_to_every_followed_collection(world):
    for index in range(12):
        world.add_collection(f"c{index}")
        world.add_post(f"c{index}", f"author{index}", hours_ago=index + 1)
        world.add_post(f"c{index}", f"author{index}", hours_ago=index + 100)
    aggregator = world.make_aggregator()

    async def scenario():
        await aggregator.load_initial(VIEWER)
        world.store.calls.clear()
        return await aggregator.load_more(VIEWER)

    asyncio.run(scenario())

    assert {call[0] for call in world.store.calls} == {f"c{index}" for index in range(12)}
    assert all(call[1] == 3 and call[2] is not None for call in world.store.calls)


def test_load_more_without_cursor_or_cache_is_empty(world):
    page = asyncio.run(world.make_aggregator().load_more(VIEWER))
    assert page.entries == []
    assert not page.has_more


def test_refresh_fetches_full_set_with_larger_pages(world):
    for index in range(12):
        world.add_collection(f"c{index}")
        world.add_post(f"c{index}", f"author{index}", hours_ago=index + 1)

    page = asyncio.run(world.make_aggregator().refresh(VIEWER))

    assert {call[0] for call in world.store.calls} == {f"c{index}" for index in range(12)}
    assert all(call[1] == 25 for call in world.store.calls)
    assert len(page.entries) == 12


def test_refresh_clears_stale_block(world):
    world.add_collection("c1")
    world.add_collection("c2")
    for hours in (1, 2, 3):
        world.add_post("c1", "x", hours_ago=hours)
        world.add_post("c2", "y", hours_ago=hours + 0.5)
    aggregator = world.make_aggregator()

    async def scenario():
        await aggregator.load_initial(VIEWER)
        world.set_profile(blocked_users=frozenset({"x"}))
        before = await aggregator.get_feed(VIEWER)
        after = await aggregator.refresh(VIEWER)
        return before, after

    before, after = asyncio.run(scenario())

    assert any(entry.author_id == "x" for entry in before.entries)
    assert after.entries
    assert not any(entry.author_id == "x" for entry in after.entries)


def test_refresh_supersedes_in_flight_load_more(world):
    world.add_collection("c1")
    for hours in range(1, 8):
        world.add_post("c1", f"a{hours}", hours_ago=hours)
    aggregator = world.make_aggregator(page_size=3)

    async def scenario():
        await aggregator.load_initial(VIEWER)
        world.store.pagination_gate = asyncio.Event()
        pending = asyncio.create_task(aggregator.load_more(VIEWER))
        await asyncio.sleep(0)

        refreshed = await aggregator.refresh(VIEWER)
        world.store.pagination_gate.set()
        stale_page = await pending
        return refreshed, stale_page

    refreshed, stale_page = asyncio.run(scenario())

    assert stale_page.superseded
    assert stale_page.entries == []
    assert [e.post_id for e in aggregator.cache.get().entries] == ids(refreshed)


def test_invalidation_discards_in_flight_load_more(world):
    world.add_collection("c1")
    for hours in range(1, 8):
        world.add_post("c1", f"a{hours}", hours_ago=hours)
    aggregator = world.make_aggregator(page_size=3)

    async def scenario():
        await aggregator.load_initial(VIEWER)
        world.store.pagination_gate = asyncio.Event()
        pending = asyncio.create_task(aggregator.load_more(VIEWER))
        await asyncio.sleep(0)

        await aggregator.cache.invalidate(reason='test')
        world.store.pagination_gate.set()
        return await pending

    page = asyncio.run(scenario())

    assert page.superseded
    assert aggregator.cache.get() is None


def gated(world):
    world.store.fetch_started = asyncio.Event()
    world.store.fetch_gate = asyncio.Event()


def test_post_created_during_initial_load_is_picked_up(world):
    world.add_collection("c1")
    world.add_post("c1", "alice", hours_ago=2, post_id="old")
    aggregator = world.make_aggregator()
    invalidator = FeedCacheInvalidator(aggregator.cache)

    async def scenario():
        gated(world)
        pending = asyncio.create_task(aggregator.get_feed(VIEWER))
        await world.store.fetch_started.wait()

        world.add_post("c1", "bob", hours_ago=0.5, post_id="new")
        changed = await invalidator.handle(FeedEvent(FeedEventType.POST_CREATED, "bob", collection_id="c1"))
        world.store.fetch_gate.set()
        return changed, await pending

    changed, page = asyncio.run(scenario())

    assert changed
    assert not page.superseded
    assert set(ids(page)) == {"old", "new"}
    assert {e.post_id for e in aggregator.cache.get().entries} == {"old", "new"}


def test_block_during_initial_load_keeps_author_out_of_cache(world):
    world.add_collection("c1")
    world.add_post("c1", "x", hours_ago=1, post_id="by-x")
    world.add_post("c1", "y", hours_ago=2, post_id="by-y")
    aggregator = world.make_aggregator()
    invalidator = FeedCacheInvalidator(aggregator.cache)

    async def scenario():
        gated(world)
        pending = asyncio.create_task(aggregator.load_initial(VIEWER))
        await world.store.fetch_started.wait()

        world.set_profile(blocked_users=frozenset({"x"}))
        await invalidator.handle(FeedEvent(FeedEventType.USER_BLOCKED, VIEWER, target_user_id="x"))
        world.store.fetch_gate.set()
        return await pending

    page = asyncio.run(scenario())

    assert ids(page) == ["by-y"]
    assert [e.post_id for e in aggregator.cache.get().entries] == ["by-y"]
    assert world.profiles.reads == 2


def test_post_created_during_refresh_is_picked_up(world):
    world.add_collection("c1")
    world.add_collection("c2")
    world.add_post("c1", "alice", hours_ago=2, post_id="old")
    world.add_post("c2", "carol", hours_ago=3, post_id="other")
    aggregator = world.make_aggregator()
    invalidator = FeedCacheInvalidator(aggregator.cache)

    async def scenario():
        await aggregator.load_initial(VIEWER)
        gated(world)
        pending = asyncio.create_task(aggregator.refresh(VIEWER))
        await world.store.fetch_started.wait()

        world.add_post("c2", "bob", hours_ago=0.5, post_id="new")
        await invalidator.handle(FeedEvent(FeedEventType.POST_CREATED, "bob", collection_id="c2"))
        world.store.fetch_gate.set()
        return await pending

    page = asyncio.run(scenario())

    assert not page.superseded
    assert set(ids(page)) == {"old", "other", "new"}
    assert {e.post_id for e in aggregator.cache.get().entries} == {"old", "other", "new"}


def test_load_gives_up_when_events_keep_landing(world):
    cache = FeedCache(VIEWER)

    class InvalidatingStore(InMemoryDocumentStore):
        async def query_posts(self, collection_id, limit, before=None, exclude_deleted=True):
            await cache.invalidate(reason='post created')
            return await super().query_posts(collection_id, limit, before, exclude_deleted)

    world.store = InvalidatingStore()
    world.add_collection("c1")
    world.add_post("c1", "alice", hours_ago=1)
    aggregator = world.make_aggregator(cache=cache)

    page = asyncio.run(aggregator.load_initial(VIEWER))

    assert page.superseded
    assert len(page.entries) == 1
    assert cache.get() is None
    assert len(world.store.calls) == MAX_LOAD_ATTEMPTS


def test_missing_user_raises_and_leaves_cache_alone(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1, post_id="kept")
    aggregator = world.make_aggregator()
    asyncio.run(aggregator.load_initial(VIEWER))

    for user_id in ("", None, "intruder"):
        with pytest.raises(AuthenticationRequired):
            asyncio.run(aggregator.load_initial(user_id))
        with pytest.raises(AuthenticationRequired):
            asyncio.run(aggregator.refresh(user_id))

    assert [e.post_id for e in aggregator.cache.get().entries] == ["kept"]


def test_follow_graph_failure_leaves_cache_alone(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1, post_id="kept")
    aggregator = world.make_aggregator()
    asyncio.run(aggregator.load_initial(VIEWER))

    world.graph.failing = True
    with pytest.raises(FeedUnavailable):
        asyncio.run(aggregator.load_initial(VIEWER))

    assert [e.post_id for e in aggregator.cache.get().entries] == ["kept"]


def test_failed_refresh_falls_back_to_previous_feed(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1, post_id="kept")
    aggregator = world.make_aggregator()
    asyncio.run(aggregator.load_initial(VIEWER))

    world.profiles.failing = True
    page = asyncio.run(aggregator.refresh(VIEWER))

    assert page.stale
    assert ids(page) == ["kept"]
    assert aggregator.cache.get() is None


def test_refresh_with_every_collection_failing_falls_back(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1, post_id="kept")
    aggregator = world.make_aggregator()
    asyncio.run(aggregator.load_initial(VIEWER))

    world.store.failing.add("c1")
    page = asyncio.run(aggregator.refresh(VIEWER))

    assert page.stale
    assert ids(page) == ["kept"]


def test_failed_refresh_without_previous_feed_raises(world):
    world.graph.failing = True
    with pytest.raises(FeedUnavailable):
        asyncio.run(world.make_aggregator().refresh(VIEWER))


def test_get_feed_serves_cache_until_follow_set_changes(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1)
    aggregator = world.make_aggregator()

    async def scenario():
        first = await aggregator.get_feed(VIEWER)
        calls_after_first = len(world.store.calls)
        second = await aggregator.get_feed(VIEWER)
        calls_after_second = len(world.store.calls)

        world.add_collection("c2")
        world.add_post("c2", "b", hours_ago=2)
        third = await aggregator.get_feed(VIEWER)
        return first, second, third, calls_after_first, calls_after_second

    first, second, third, calls_after_first, calls_after_second = asyncio.run(scenario())

    assert ids(first) == ids(second)
    assert calls_after_first == calls_after_second
    assert len(world.store.calls) > calls_after_second
    assert len(third.entries) == 2


def test_get_feed_reloads_after_mark_stale(world):
    world.add_collection("c1")
    world.add_post("c1", "a", hours_ago=1)
    aggregator = world.make_aggregator()

    async def scenario():
        await aggregator.get_feed(VIEWER)
        await aggregator.cache.mark_stale()
        calls = len(world.store.calls)
        await aggregator.get_feed(VIEWER)
        return calls

    calls = asyncio.run(scenario())
    assert len(world.store.calls) > calls
    assert not aggregator.cache.is_stale


def test_get_feed_page_size_override(world):
    world.add_collection("c1")
    for hours in range(1, 9):
        world.add_post("c1", f"a{hours}", hours_ago=hours)

    page = asyncio.run(world.make_aggregator().get_feed(VIEWER, page_size=3))

    assert len(page.entries) == 3
    assert page.has_more


def test_hidden_collection_event_keeps_feed_coherent(world):
    world.add_collection("C")
    world.add_collection("D")
    world.add_post("C", "a", hours_ago=1)
    world.add_post("D", "b", hours_ago=2)
    channel = EventChannel()
    aggregator = world.make_aggregator(channel=channel)
    invalidator = FeedCacheInvalidator(aggregator.cache, channel)

    async def scenario():
        invalidator.attach()
        invalidator.start()
        await aggregator.get_feed(VIEWER)

        world.set_profile(blocked_collection_ids=frozenset({"C"}))
        await channel.publish(FeedEvent(FeedEventType.COLLECTION_HIDDEN, VIEWER, collection_id="C"))
        await invalidator.drain()
        page = await aggregator.get_feed(VIEWER)

        await invalidator.stop()
        return page

    page = asyncio.run(scenario())

    assert page.entries
    assert all(entry.collection.id != "C" for entry in page.entries)


def test_unfollow_collection_publishes_and_patches(world):
    world.add_collection("c1")
    world.add_collection("c2")
    world.add_post("c1", "a", hours_ago=1)
    world.add_post("c2", "b", hours_ago=2)
    channel = EventChannel()
    aggregator = world.make_aggregator(channel=channel)
    invalidator = FeedCacheInvalidator(aggregator.cache, channel)

    async def scenario():
        invalidator.attach()
        invalidator.start()
        await aggregator.load_initial(VIEWER)
        await aggregator.unfollow_collection(VIEWER, "c1")
        await invalidator.drain()
        await invalidator.stop()

    asyncio.run(scenario())

    cached = aggregator.cache.get()
    assert {entry.collection.id for entry in cached.entries} == {"c2"}
    assert cached.collection_ids == {"c2"}
    assert [c.id for c in world.graph.following[VIEWER]] == ["c2"]


def test_unfollow_collection_without_channel_patches_directly(world):
    world.add_collection("c1")
    world.add_collection("c2")
    world.add_post("c1", "a", hours_ago=1)
    world.add_post("c2", "b", hours_ago=2)
    cache = FeedCache(VIEWER)
    aggregator = world.make_aggregator(cache=cache)

    async def scenario():
        await aggregator.load_initial(VIEWER)
        await aggregator.unfollow_collection(VIEWER, "c2")

    asyncio.run(scenario())

    assert {entry.collection.id for entry in cache.get().entries} == {"c1"}
