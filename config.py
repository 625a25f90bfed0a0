"""
Connector configuration for the SCIM directory sync
"""

import os
import re
import logging
from dataclasses import dataclass
from enum import Enum
from typing import List, Mapping, Optional, Pattern

from dotenv import load_dotenv

from exceptions import ConfigError
from scim_resources import JSON_CONTENT_TYPE, SCIM_CONTENT_TYPE, ResourceType


logger = logging.getLogger(__name__)


class AuthMode(str, Enum):
    NONE = "NONE"
    BASIC_AUTH = "BASIC_AUTH"
    BEARER = "BEARER"


class ImportAction(str, Enum):
    """What import does with a remote resource that has no local counterpart."""
    NOTHING = "NOTHING"
    CREATE_LOCAL = "CREATE_LOCAL"
    DELETE_REMOTE = "DELETE_REMOTE"


class UsernameSource(str, Enum):
    USERNAME = "username"
    EMAIL = "email"


# Option name -> SyncConfig attribute
OPTIONS = {
    "endpoint": "endpoint",
    "content-type": "content_type",
    "auth-mode": "auth_mode",
    "auth-user": "auth_user",
    "auth-pass": "auth_pass",
    "propagation-user": "propagation_user",
    "propagation-group": "propagation_group",
    "sync-import": "sync_import",
    "sync-refresh": "sync_refresh",
    "sync-import-action": "sync_import_action",
    "group-patchOp": "group_patch_op",
    "user-patchOp": "user_patch_op",
    "group-filter": "group_filter",
    "username-source": "username_source",
    "map-existing-users": "map_existing_users",
    "map-existing-groups": "map_existing_groups",
    "strict-lookups": "strict_lookups",
    "timeout": "timeout",
    "page-size": "page_size",
    "tenant-id": "tenant_id",
    "connector-id": "connector_id",
}

BOOLEAN_OPTIONS = {
    "propagation-user",
    "propagation-group",
    "sync-import",
    "sync-refresh",
    "group-patchOp",
    "user-patchOp",
    "map-existing-users",
    "map-existing-groups",
    "strict-lookups",
}


def parse_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def env_name(option: str) -> str:
    """Environment variable holding an option, e.g. group-patchOp -> SCIM_GROUP_PATCHOP."""
    return "SCIM_" + option.upper().replace("-", "_")


@dataclass
class SyncConfig:
    """Settings of one connector (one remote endpoint within one tenant)."""

    endpoint: str
    content_type: str = SCIM_CONTENT_TYPE
    auth_mode: AuthMode = AuthMode.NONE
    auth_user: Optional[str] = None
    auth_pass: Optional[str] = None
    propagation_user: bool = True
    propagation_group: bool = True
    sync_import: bool = False
    sync_refresh: bool = False
    sync_import_action: ImportAction = ImportAction.CREATE_LOCAL
    group_patch_op: bool = False
    user_patch_op: bool = False
    group_filter: Optional[str] = None
    username_source: UsernameSource = UsernameSource.USERNAME
    map_existing_users: bool = False
    map_existing_groups: bool = False
    strict_lookups: bool = False
    timeout: float = 5.0
    page_size: int = 100
    tenant_id: str = "default"
    connector_id: str = "scim"

    def __post_init__(self):
        if not self.endpoint:
            raise ConfigError("endpoint is required")
        self.endpoint = self.endpoint.rstrip("/")

        self.auth_mode = _enum(AuthMode, self.auth_mode, "auth-mode")
        self.sync_import_action = _enum(ImportAction, self.sync_import_action, "sync-import-action")
        self.username_source = _enum(UsernameSource, self.username_source, "username-source")

        if self.content_type not in (SCIM_CONTENT_TYPE, JSON_CONTENT_TYPE):
            logger.warning(f"Unusual content type configured: {self.content_type}")
        if self.auth_mode != AuthMode.NONE and not self.auth_pass:
            raise ConfigError(f"auth-pass is required for auth-mode {self.auth_mode.value}")
        if self.auth_mode == AuthMode.BASIC_AUTH and not self.auth_user:
            raise ConfigError("auth-user is required for auth-mode BASIC_AUTH")

        try:
            self.timeout = float(self.timeout)
            self.page_size = int(self.page_size)
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid numeric option: {e}") from e
        if self.page_size < 1:
            raise ConfigError("page-size must be positive")

        compile_group_filter(self.group_filter)

    @classmethod
    def from_options(cls, options: Mapping[str, object]) -> "SyncConfig":
        """Build a config from the connector option names (endpoint, group-patchOp, ...)."""
        kwargs = {}
        for option, value in options.items():
            if option not in OPTIONS:
                logger.debug(f"Ignoring unknown option '{option}'")
                continue
            if value is None or value == "":
                continue
            if option in BOOLEAN_OPTIONS:
                value = parse_bool(value)
            kwargs[OPTIONS[option]] = value
        if "endpoint" not in kwargs:
            raise ConfigError("endpoint is required")
        return cls(**kwargs)

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "SyncConfig":
        """Load the config from SCIM_* environment variables (and a .env file if present)."""
        load_dotenv(dotenv_path)
        options = {}
        for option in OPTIONS:
            value = os.getenv(env_name(option))
            if value is not None:
                options[option] = value
        return cls.from_options(options)

    @property
    def group_patterns(self) -> List[Pattern]:
        return compile_group_filter(self.group_filter)

    def use_patch(self, resource_type: ResourceType) -> bool:
        if resource_type == ResourceType.GROUP:
            return self.group_patch_op
        return self.user_patch_op

    def propagates(self, resource_type: ResourceType) -> bool:
        if resource_type == ResourceType.GROUP:
            return self.propagation_group
        return self.propagation_user

    def map_existing(self, resource_type: ResourceType) -> bool:
        if resource_type == ResourceType.GROUP:
            return self.map_existing_groups
        return self.map_existing_users


def _enum(enum_class, value, option: str):
    try:
        return enum_class(value)
    except ValueError:
        allowed = ", ".join(member.value for member in enum_class)
        raise ConfigError(f"Invalid value '{value}' for {option} (expected one of: {allowed})")


def compile_group_filter(group_filter: Optional[str]) -> List[Pattern]:
    """Compile a comma-separated list of group name regexes."""
    if not group_filter or not group_filter.strip():
        return []
    patterns = []
    for pattern in group_filter.split(","):
        pattern = pattern.strip()
        if not pattern:
            continue
        try:
            patterns.append(re.compile(pattern))
        except re.error as e:
            raise ConfigError(f"Invalid group-filter pattern '{pattern}': {e}") from e
    return patterns
