import pytest
from username_index.errors import UsernameTakenError, UserNotFoundError
from username_index.store import SqliteUserStore

async def open_store(tmp_path) -> SqliteUserStore:
    # Use a temporary directory for DB tests to avoid polluting /data
    store = SqliteUserStore(tmp_path / "users.db")
    await store.initialize()
    return store

@pytest.mark.asyncio
async def test_create_and_exists(tmp_path):
    store = await open_store(tmp_path)
    try:
        assert await store.exists("alice") is False
        await store.create_user("Alice ", name="Alice")
        # Stored in normalized form
        assert await store.exists("alice") is True
        assert await store.count_usernames() == 1
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_unique_constraint_raises_taken(tmp_path):
    store = await open_store(tmp_path)
    try:
        await store.create_user("bob")
        with pytest.raises(UsernameTakenError):
            await store.create_user("BOB")
        assert await store.count_usernames() == 1
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_bulk_insert_skips_duplicates(tmp_path):
    store = await open_store(tmp_path)
    try:
        await store.create_user("testuser1")
        created = await store.create_users([f"testuser{i}" for i in range(1, 6)])
        assert created == 4
        assert await store.count_usernames() == 5
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_stream_all_usernames(tmp_path):
    store = await open_store(tmp_path)
    try:
        await store.create_users(["carol", "dave", "erin"])
        streamed = [u async for u in store.stream_all_usernames()]
        assert sorted(streamed) == ["carol", "dave", "erin"]
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_persistence(tmp_path):
    """State persists across store instances."""
    store1 = await open_store(tmp_path)
    await store1.create_user("persisted")
    await store1.close()

    store2 = await open_store(tmp_path)
    try:
        assert await store2.exists("persisted") is True
    finally:
        await store2.close()

@pytest.mark.asyncio
async def test_use_before_initialize_fails(tmp_path):
    store = SqliteUserStore(tmp_path / "users.db")
    with pytest.raises(RuntimeError):
        await store.exists("alice")

@pytest.mark.asyncio
async def test_rename_user(tmp_path):
    store = await open_store(tmp_path)
    try:
        user_id = await store.create_user("old_name")
        await store.create_user("taken")

        await store.rename_user(user_id, "New_Name")
        assert await store.find_user_id("new_name") == user_id
        assert await store.exists("old_name") is False

        with pytest.raises(UsernameTakenError):
            await store.rename_user(user_id, "taken")
        with pytest.raises(UserNotFoundError):
            await store.rename_user(9999, "ghost")
    finally:
        await store.close()

@pytest.mark.asyncio
async def test_delete_test_users_keeps_real_accounts(tmp_path):
    store = await open_store(tmp_path)
    try:
        await store.create_users([f"testuser{i}" for i in range(1, 4)])
        await store.create_users(["testuser_fan", "alice"])

        assert await store.delete_test_users() == 3
        remaining = sorted([u async for u in store.stream_all_usernames()])
        assert remaining == ["alice", "testuser_fan"]
    finally:
        await store.close()
