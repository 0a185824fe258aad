from typing import Optional
from pydantic import BaseModel, Field, field_validator

class IndexConfig(BaseModel):
    # Filter sizing
    target_false_positive_rate: float = 0.01
    minimum_capacity: int = 100_000
    target_load_factor: float = 0.5

    # Rebuild policy
    rebuild_threshold: float = 0.75
    rebuild_interval: Optional[float] = None
    rebuild_max_attempts: int = 5
    rebuild_backoff_min: float = 1.0
    rebuild_backoff_max: float = 30.0

    # Store timeouts (seconds)
    fallback_timeout: float = 2.0
    scan_timeout: float = 300.0

    max_username_length: int = 255
    lock_stripes: int = 64

    @field_validator('target_false_positive_rate')
    @classmethod
    def check_rate(cls, v):
        if not 0 < v < 1: raise ValueError('target_false_positive_rate must be between 0 and 1')
        return v

    @field_validator('rebuild_threshold', 'target_load_factor')
    @classmethod
    def check_ratio(cls, v):
        if not 0 < v <= 1: raise ValueError('Must be in (0, 1]')
        return v

    @field_validator('minimum_capacity', 'rebuild_max_attempts', 'max_username_length', 'lock_stripes')
    @classmethod
    def check_positive(cls, v):
        if v < 1: raise ValueError('Must be positive integer')
        return v

    @field_validator('fallback_timeout', 'scan_timeout')
    @classmethod
    def check_timeout(cls, v):
        if v <= 0: raise ValueError('Timeout must be positive')
        return v

    @field_validator('rebuild_interval')
    @classmethod
    def check_interval(cls, v):
        if v is not None and v <= 0: raise ValueError('rebuild_interval must be positive')
        return v

    @field_validator('rebuild_backoff_min', 'rebuild_backoff_max')
    @classmethod
    def check_backoff(cls, v):
        if v < 0: raise ValueError('Backoff must not be negative')
        return v

class IndexStats(BaseModel):
    """Read-only snapshot for dashboards."""
    capacity: int
    inserted_count: int
    estimated_false_positive_rate: float
    saturation: float

    initialized: bool = False
    bit_size: int = 0
    hash_count: int = 0
    fill_ratio: float = 0.0
    rebuild_in_flight: bool = False
    rebuild_count: int = 0
    last_rebuild_count: int = 0

    checks: int = 0
    fast_path_hits: int = 0
    store_lookups: int = 0
    false_positives: int = Field(default=0, description="Filter said maybe, store said no")
