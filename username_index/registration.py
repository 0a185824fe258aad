from typing import Optional
from loguru import logger

from username_index.errors import UsernameTakenError
from username_index.service import ExistenceIndexService
from username_index.store import SqliteUserStore
from username_index.utils import generate_username, validate_username

async def find_available_username(
    service: ExistenceIndexService,
    name: str,
    max_attempts: int = 50,
    timestamp: Optional[int] = None
) -> str:
    """Tries base, base_1, base_2, ... until the index reports a free candidate."""
    base = generate_username(name, timestamp=timestamp)
    candidate = base
    tries = 0
    while await service.check_username_exists(candidate):
        tries += 1
        if tries > max_attempts:
            raise UsernameTakenError(f"No free username derived from '{base}' after {max_attempts} attempts")
        candidate = f"{base}_{tries}"
    return candidate

async def register_username(
    service: ExistenceIndexService,
    store: SqliteUserStore,
    name: str,
    max_attempts: int = 3
) -> str:
    """
    Picks a free username, commits it to the store, then records it in the index.
    The UNIQUE constraint stays the final arbiter: a lost race retries with a new candidate.
    """
    for attempt in range(1, max_attempts + 1):
        candidate = await find_available_username(service, name)
        try:
            await store.create_user(candidate, name=name)
        except UsernameTakenError:
            logger.info(f"Username '{candidate}' taken concurrently (attempt {attempt}/{max_attempts})")
            # The winner may not have reached add_username yet
            service.add_username(candidate)
            continue

        service.add_username(candidate)
        logger.info(f"👤 Registered username '{candidate}'")
        return candidate

    raise UsernameTakenError(f"Could not register a username for '{name}' after {max_attempts} attempts")

async def change_username(
    service: ExistenceIndexService,
    store: SqliteUserStore,
    user_id: int,
    new_username: str
) -> str:
    """Profile update: only a row owned by another user blocks the new name."""
    username = validate_username(new_username, service.config.max_username_length)

    if await service.check_username_exists(username):
        owner = await store.find_user_id(username)
        if owner == user_id:
            logger.debug(f"User {user_id} already owns '{username}'")
            return username
        if owner is not None:
            raise UsernameTakenError(f"Username already taken: {username}")

    try:
        await store.rename_user(user_id, username)
    except UsernameTakenError:
        service.add_username(username)
        raise

    service.add_username(username)
    logger.info(f"✏️ User {user_id} renamed to '{username}'")
    return username
