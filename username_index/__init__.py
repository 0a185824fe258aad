"""Probabilistic username existence index in front of a user registry."""

from username_index.bloom import BitField, BloomFilter, HashScheme
from username_index.errors import (
    InvalidUsernameError,
    NotReadyError,
    StoreUnavailableError,
    UsernameIndexError,
    UsernameTakenError,
    UserNotFoundError,
)
from username_index.registration import change_username, find_available_username, register_username
from username_index.schemas import IndexConfig, IndexStats
from username_index.service import ExistenceIndexService
from username_index.store import AuthoritativeStore, SqliteUserStore

__all__ = [
    "BitField",
    "BloomFilter",
    "HashScheme",
    "ExistenceIndexService",
    "AuthoritativeStore",
    "SqliteUserStore",
    "IndexConfig",
    "IndexStats",
    "UsernameIndexError",
    "NotReadyError",
    "StoreUnavailableError",
    "InvalidUsernameError",
    "UsernameTakenError",
    "UserNotFoundError",
    "change_username",
    "find_available_username",
    "register_username",
]
