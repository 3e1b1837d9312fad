import pytest

from models import Item, ItemKind, ProcessingStatus


@pytest.mark.asyncio
async def test_register_channel_is_idempotent(db):
    assert await db.execute('register_channel', channel_id="C1", title="") is True
    assert await db.execute('register_channel', channel_id="C1", title="Named") is False
    channel = await db.execute('get_channel', channel_id="C1")
    assert channel.title == "Named"
    assert channel.is_active is True
    assert channel.cursor is None


@pytest.mark.asyncio
async def test_create_item_ignores_duplicates(db):
    await db.execute('register_channel', channel_id="C1")
    item = Item(item_id="V1", channel_id="C1", title="First")
    assert await db.execute('create_item', item=item) is True
    assert await db.execute('create_item', item=Item(item_id="V1", channel_id="C1", title="Again")) is False
    stored = await db.execute('get_item', item_id="V1")
    assert stored.title == "First"
    assert stored.processing_status == ProcessingStatus.PENDING
    assert stored.kind == ItemKind.NONE
    assert stored.processed is False


@pytest.mark.asyncio
async def test_retry_eligibility(db):
    await db.execute('register_channel', channel_id="C1")
    await db.execute('register_channel', channel_id="C2")
    await db.execute('update_channel_active_status', channel_id="C2", is_active=False, error_message="404")
    for item in (
        Item(item_id="A", channel_id="C1", title="a"),
        Item(item_id="B", channel_id="C1", title="b", retry_count=3),
        Item(item_id="L", channel_id="C1", title="l", kind=ItemKind.LIVE),
        Item(item_id="D", channel_id="C2", title="d"),
        Item(item_id="F", channel_id="C1", title="f"),
    ):
        await db.execute('create_item', item=item)
    await db.execute('mark_item_failed', item_id="F", retry_count=3, error_message="x", terminal=True, completed_at=5)

    eligible = await db.execute('list_retry_eligible_items', max_retries=3)
    assert [i.item_id for i in eligible] == ["A"]
    live = await db.execute('list_live_items')
    assert [i.item_id for i in live] == ["L"]

    counts = await db.execute('count_items_by_status')
    assert counts == {"pending": 4, "processing": 0, "completed": 0, "failed": 1}


@pytest.mark.asyncio
async def test_token_registration_upserts_by_device(db):
    await db.execute('upsert_user', user_id=1)
    first = await db.execute('register_token', user_id=1, device_id="phone", token="old")
    second = await db.execute('register_token', user_id=1, device_id="phone", token="new")
    assert first == second
    tokens = await db.execute('get_active_tokens_for_user', user_id=1)
    assert [t.token for t in tokens] == ["new"]


@pytest.mark.asyncio
async def test_unknown_operation_raises(db):
    with pytest.raises(RuntimeError):
        await db.execute('drop_everything')


@pytest.mark.asyncio
async def test_requeue_stale_items_only_touches_old_processing_rows(db):
    await db.execute('register_channel', channel_id="C1")
    for item_id in ("OLD", "NEW", "DONE"):
        await db.execute('create_item', item=Item(item_id=item_id, channel_id="C1", title=item_id))
    await db.execute('mark_item_processing', item_id="OLD", started_at=100)
    await db.execute('mark_item_processing', item_id="NEW", started_at=900)
    await db.execute('mark_item_completed', item_id="DONE", summary="s", transcript="t", completed_at=50)

    assert await db.execute('requeue_stale_items', started_before=500) == 1

    assert (await db.execute('get_item', item_id="OLD")).processing_status == ProcessingStatus.PENDING
    assert (await db.execute('get_item', item_id="NEW")).processing_status == ProcessingStatus.PROCESSING
    assert (await db.execute('get_item', item_id="DONE")).processing_status == ProcessingStatus.COMPLETED
