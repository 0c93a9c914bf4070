"""Application configuration loaded from environment variables."""

import os
from dataclasses import dataclass

DEFAULT_API_VERSION = "9.2"
DEFAULT_STATE_DIR = "~/.config/webresource-manager"
DEFAULT_STATE_CONTAINER = "webresource-manager-state"
DEFAULT_RENEWAL_BUFFER_SECONDS = 300
DEFAULT_INTERACTIVE_TIMEOUT_SECONDS = 600
DEFAULT_WEB_RESOURCE_BATCH_SIZE = 20

_TRUE_VALUES = frozenset({"1", "true", "yes", "on"})


class ConfigurationError(Exception):
    """Raised when a required setting is missing or invalid."""


@dataclass(frozen=True)
class AppConfig:
    """Centralized application configuration.

    Nothing is required at load time: the client id is validated when a
    session is initialised, so a connection can be registered before the
    application registration exists.
    """

    client_id: str = ""
    tenant_id: str = ""

    api_version: str = DEFAULT_API_VERSION
    solution_name_filter: str = ""
    solution_sort_ascending: bool = True
    workspace_root: str = "."

    state_dir: str = DEFAULT_STATE_DIR
    storage_connection_string: str = ""
    state_container: str = DEFAULT_STATE_CONTAINER

    renewal_buffer_seconds: int = DEFAULT_RENEWAL_BUFFER_SECONDS
    interactive_timeout_seconds: int = DEFAULT_INTERACTIVE_TIMEOUT_SECONDS
    web_resource_batch_size: int = DEFAULT_WEB_RESOURCE_BATCH_SIZE


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def load_config() -> AppConfig:
    """Construct an AppConfig from environment variables.

    Optional environment variables (with defaults):
        WRM_CLIENT_ID: Azure AD application (client) ID.
        WRM_TENANT_ID: Azure AD tenant ID; organizations authority when unset.
        WRM_API_VERSION: Dataverse Web API version (default: 9.2).
        WRM_SOLUTION_NAME_FILTER: Substring filter on solution friendly names.
        WRM_SOLUTION_SORT_ASCENDING: Sort solutions ascending (default: true).
        WRM_WORKSPACE_ROOT: Folder web resources are pulled into (default: cwd).
        WRM_STATE_DIR: Directory for locally persisted state.
        WRM_STORAGE_CONNECTION_STRING: Azure Storage connection string; when set,
            state is persisted in blob storage instead of WRM_STATE_DIR.
        WRM_STATE_CONTAINER: Blob container for persisted state.
        WRM_RENEWAL_BUFFER_SECONDS: Seconds before expiry a token is renewed (default: 300).
        WRM_INTERACTIVE_TIMEOUT_SECONDS: Browser login window (default: 600).
        WRM_WEB_RESOURCE_BATCH_SIZE: Web resource ids per listing request (default: 20).

    Returns:
        Configured AppConfig instance.

    Raises:
        ConfigurationError: If the API version is blank or a numeric value is invalid.
    """
    api_version = os.environ.get("WRM_API_VERSION", DEFAULT_API_VERSION).strip()
    if not api_version:
        raise ConfigurationError("WRM_API_VERSION must not be empty")

    return AppConfig(
        client_id=os.environ.get("WRM_CLIENT_ID", "").strip(),
        tenant_id=os.environ.get("WRM_TENANT_ID", "").strip(),
        api_version=api_version,
        solution_name_filter=os.environ.get("WRM_SOLUTION_NAME_FILTER", ""),
        solution_sort_ascending=(
            os.environ.get("WRM_SOLUTION_SORT_ASCENDING", "true").strip().lower() in _TRUE_VALUES
        ),
        workspace_root=os.environ.get("WRM_WORKSPACE_ROOT", "."),
        state_dir=os.environ.get("WRM_STATE_DIR", DEFAULT_STATE_DIR),
        storage_connection_string=os.environ.get("WRM_STORAGE_CONNECTION_STRING", ""),
        state_container=os.environ.get("WRM_STATE_CONTAINER", DEFAULT_STATE_CONTAINER),
        renewal_buffer_seconds=_int_env(
            "WRM_RENEWAL_BUFFER_SECONDS", DEFAULT_RENEWAL_BUFFER_SECONDS
        ),
        interactive_timeout_seconds=_int_env(
            "WRM_INTERACTIVE_TIMEOUT_SECONDS", DEFAULT_INTERACTIVE_TIMEOUT_SECONDS
        ),
        web_resource_batch_size=_int_env(
            "WRM_WEB_RESOURCE_BATCH_SIZE", DEFAULT_WEB_RESOURCE_BATCH_SIZE
        ),
    )
