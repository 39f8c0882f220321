"""
Configuration module for transactional soft deletes.

Provides the column/table naming surface, timestamp behaviour and the
acting-user provider used by the transaction coordinator.
"""

import json
import re
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union, get_args, get_origin

from pydantic import BaseModel, Field, field_validator

# Actor id recorded when no user id provider is configured. The default schema
# does not allow NULL in deleted_by_id, so a fixed sentinel is stored instead.
UNKNOWN_USER_ID = -1

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class SoftDeleteConfig(BaseModel):
    """Central configuration for transactional soft deletes.

    Table and column names are read when :mod:`transactional_soft_deletes.tables`
    is first imported, so they must be set through the environment (``TSD_``
    prefix) or :func:`set_config` before that import. The remaining options are
    read at call time.

    Example:
        >>> config = SoftDeleteConfig(
        ...     freeze_restore_timestamp=False,
        ...     user_id_provider=lambda: current_user.id,
        ... )
        >>> set_config(config)

    Environment Variables:
        - TSD_DELETED_MARKER_COLUMN
        - TSD_FREEZE_RESTORE_TIMESTAMP
        - TSD_BULK_RESTORE_TIMEOUT_SECONDS
        - TSD_DATABASE_URL
    """

    # Entity marker
    deleted_marker_column: str = Field(
        "delete_transaction_id",
        description="Column on soft-deletable tables holding the transaction id",
    )

    # Log tables
    transaction_table: str = Field(
        "delete_transaction", description="Table holding delete transactions"
    )
    log_table: str = Field(
        "delete_transaction_log", description="Table holding per-row deletion logs"
    )
    column_id: str = Field("id", description="Primary key column of both tables")
    column_delete_transaction_id: str = Field(
        "delete_transaction_id", description="Log column referencing the transaction"
    )
    column_deleted_at: str = Field("deleted_at", description="Deletion timestamp")
    column_deleted_by_id: str = Field("deleted_by_id", description="Deleting actor")
    column_restored_at: str = Field("restored_at", description="Restore timestamp")
    column_restored_by_id: str = Field(
        "restored_by_id", description="Restoring actor"
    )
    column_entity_type: str = Field(
        "model_class", description="Log column holding the entity type id"
    )
    column_entity_id: str = Field(
        "row_id", description="Log column holding the entity primary key"
    )

    # Behaviour
    freeze_restore_timestamp: bool = Field(
        True,
        description="Reuse the shared transaction timestamp for every restore "
        "instead of minting a fresh one per call",
    )
    bulk_restore_timeout_seconds: Optional[float] = Field(
        None, description="Abort a bulk restore running longer than this", gt=0
    )

    # CLI
    database_url: Optional[str] = Field(
        None, description="SQLAlchemy URL used by the command line interface"
    )

    user_id_provider: Optional[Callable[[], Any]] = Field(
        None,
        description="Zero-argument callable returning the acting user id",
        exclude=True,
    )

    @field_validator(
        "deleted_marker_column",
        "transaction_table",
        "log_table",
        "column_id",
        "column_delete_transaction_id",
        "column_deleted_at",
        "column_deleted_by_id",
        "column_restored_at",
        "column_restored_by_id",
        "column_entity_type",
        "column_entity_id",
    )
    @classmethod
    def validate_identifier(cls, v: str) -> str:
        """Ensure table and column names are plain SQL identifiers."""
        if not _IDENTIFIER.match(v):
            raise ValueError(f"'{v}' is not a valid table or column name")
        return v

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return self.model_dump()

    @classmethod
    def from_env(cls, prefix: str = "TSD_") -> "SoftDeleteConfig":
        """
        Load configuration from environment variables.

        Args:
            prefix: Prefix for environment variables

        Returns:
            Configuration instance
        """
        import os

        config_dict: Dict[str, Any] = {}

        for field_name, field_info in cls.model_fields.items():
            if field_name == "user_id_provider":
                continue

            env_var = f"{prefix}{field_name.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]

            field_type = field_info.annotation
            if get_origin(field_type) is Union:
                args = get_args(field_type)
                field_type = next((arg for arg in args if arg is not type(None)), str)

            try:
                if field_type == bool:
                    config_dict[field_name] = value.lower() in (
                        "true",
                        "1",
                        "yes",
                        "on",
                    )
                elif field_type == float:
                    config_dict[field_name] = float(value)
                elif isinstance(field_type, type) and issubclass(field_type, Enum):
                    config_dict[field_name] = field_type(value)
                else:
                    config_dict[field_name] = value
            except (ValueError, TypeError):
                # Let model validation report the raw value
                config_dict[field_name] = value

        return cls.model_validate(config_dict)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "SoftDeleteConfig":
        """
        Load configuration from a JSON or YAML file.

        Args:
            path: Path to a ``.json``, ``.yaml`` or ``.yml`` file

        Returns:
            Configuration instance
        """
        path = Path(path)
        text = path.read_text(encoding="utf-8")

        if path.suffix.lower() in (".yaml", ".yml"):
            import yaml

            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)

        return cls.model_validate(data)


# Global configuration instance
_config: Optional[SoftDeleteConfig] = None


def get_config() -> SoftDeleteConfig:
    """
    Get the global configuration instance.

    Returns:
        Global configuration
    """
    global _config

    if _config is None:
        _config = SoftDeleteConfig.from_env()

    return _config


def set_config(config: SoftDeleteConfig) -> None:
    """
    Set the global configuration instance.

    Args:
        config: Configuration to set
    """
    global _config
    _config = config


def configure(**kwargs: Any) -> SoftDeleteConfig:
    """
    Configure transactional soft deletes with keyword arguments.

    Args:
        **kwargs: Configuration parameters

    Returns:
        Updated configuration
    """
    global _config

    if _config is None:
        _config = SoftDeleteConfig(**kwargs)
    else:
        config_dict = _config.to_dict()
        config_dict["user_id_provider"] = _config.user_id_provider
        config_dict.update(kwargs)
        _config = SoftDeleteConfig(**config_dict)

    return _config
