"""
Engine configuration loaded from a JSON file.
"""
import json
import logging
from dataclasses import dataclass, field, fields, asdict
from pathlib import Path
from typing import Optional, Dict, Any

from .models import DuplicateAction, RetryPolicy
from .schedule import UploadSchedule

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

DEFAULT_CONTROL_PORT = 9847


@dataclass
class EngineConfig:
    """Settings for every component of the transfer engine."""
    region: str = "us-east-1"
    endpoint_url: Optional[str] = None
    profile: Optional[str] = None
    default_bucket: Optional[str] = None

    max_concurrent: int = 4
    multipart_threshold: int = 16 * MIB
    part_size: int = 8 * MIB
    max_part_workers: int = 4

    max_retry_attempts: int = 3
    retry_base_delay: float = 5.0
    retry_max_delay: float = 300.0
    retry_jitter: float = 0.1

    bandwidth_limit: int = 0  # bytes per second, 0 = unlimited
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    verify_checksum: bool = True
    presign_expiry: int = 3600

    duplicate_detection: bool = True
    check_remote_duplicates: bool = True
    duplicate_action: DuplicateAction = DuplicateAction.WARN
    max_full_hash_size: int = 500 * MIB

    state_file: Optional[Path] = None
    history_file: Optional[Path] = None
    max_history_items: int = 1000

    control_host: str = "127.0.0.1"
    control_port: int = DEFAULT_CONTROL_PORT

    schedule: UploadSchedule = field(default_factory=UploadSchedule)

    def __post_init__(self):
        self.duplicate_action = DuplicateAction(self.duplicate_action)
        if isinstance(self.schedule, dict):
            self.schedule = UploadSchedule.from_dict(self.schedule)
        if self.state_file is not None:
            self.state_file = Path(self.state_file)
        if self.history_file is not None:
            self.history_file = Path(self.history_file)

        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if self.max_part_workers < 1:
            raise ValueError("max_part_workers must be at least 1")
        if self.bandwidth_limit < 0:
            raise ValueError("bandwidth_limit cannot be negative")
        if not 0 <= self.control_port <= 65535:
            raise ValueError(f"Invalid control port: {self.control_port}")

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_retry_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter
        )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown config keys: {', '.join(sorted(unknown))}")
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['duplicate_action'] = self.duplicate_action.value
        data['state_file'] = str(self.state_file) if self.state_file else None
        data['history_file'] = str(self.history_file) if self.history_file else None
        data['schedule'] = self.schedule.to_dict()
        return data


def load_config(config_file: Optional[Path] = None) -> EngineConfig:
    """Load configuration from a JSON file.

    Args:
        config_file: Path to config file. Missing files yield the defaults.

    Returns:
        EngineConfig instance

    Raises:
        ValueError: If the file is not valid JSON or holds invalid values
    """
    if not config_file:
        return EngineConfig()

    config_file = Path(config_file)
    if not config_file.exists():
        logger.info(f"Config file {config_file} not found, using defaults")
        return EngineConfig()

    try:
        with open(config_file) as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid config file {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ValueError(f"Config file {config_file} must contain a JSON object")

    logger.debug(f"Loaded config from {config_file}")
    return EngineConfig.from_dict(data)
