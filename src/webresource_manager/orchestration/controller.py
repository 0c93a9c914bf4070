"""Workspace controller: connects, lists, pulls and publishes web resources."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from webresource_manager.auth.credential_cache import CredentialCache
from webresource_manager.auth.models import ConnectionIdentity
from webresource_manager.auth.session import (
    AuthenticationError,
    OpenBrowser,
    TokenSessionManager,
    token_session_manager_from_config,
)
from webresource_manager.config import AppConfig, ConfigurationError
from webresource_manager.connections.favorites import FavoriteSolutions
from webresource_manager.connections.registry import ConnectionRegistry
from webresource_manager.dataverse.webresources import (
    WebResourceService,
    web_resource_service_from_config,
)
from webresource_manager.storage.secret_store import secret_store_from_config
from webresource_manager.sync.filesystem import LocalFileSystem
from webresource_manager.sync.models import PullAction, SyncConflictWarning
from webresource_manager.sync.tracker import SyncStateTracker, content_hash
from webresource_manager.tree.builder import (
    MalformedResourceNameError,
    build_tree,
    split_name,
)

if TYPE_CHECKING:
    from webresource_manager.auth.models import Credential
    from webresource_manager.dataverse.models import Solution
    from webresource_manager.tree.models import FileNode, FolderNode

logger = logging.getLogger(__name__)

Acknowledge = Callable[[SyncConflictWarning], Awaitable[None]]
SessionFactory = Callable[[ConnectionIdentity, CredentialCache, AppConfig], TokenSessionManager]
ServiceFactory = Callable[[str, AppConfig], WebResourceService]


class NotConnectedError(Exception):
    """Raised when a remote operation is attempted without an active connection."""


@dataclass
class ResourceTreeResult:
    """A freshly built tree plus the listing entries that could not be placed."""

    root: FolderNode
    skipped: list[MalformedResourceNameError] = field(default_factory=list)


class WorkspaceController:
    """Drives one active connection at a time for a local workspace folder.

    Each connection keeps its own TokenSessionManager for the lifetime of
    the controller, so switching back to a connection reuses its tokens.
    Sync records are cleared whenever the active connection changes.
    """

    def __init__(
        self,
        config: AppConfig,
        registry: ConnectionRegistry,
        credential_cache: CredentialCache,
        favorites: FavoriteSolutions,
        open_browser: OpenBrowser,
        tracker: SyncStateTracker | None = None,
        fs: LocalFileSystem | None = None,
        session_factory: SessionFactory = token_session_manager_from_config,
        service_factory: ServiceFactory = web_resource_service_from_config,
    ) -> None:
        """Initialise the controller.

        Args:
            config: Application configuration instance.
            registry: Registered connections.
            credential_cache: Persistence shared by all session managers.
            favorites: Favorite solutions per connection.
            open_browser: Coroutine function that opens the login URL.
            tracker: Sync state for pulled files; a new one by default.
            fs: File system access; the local disk by default.
            session_factory: Builds a TokenSessionManager for a connection.
            service_factory: Builds a WebResourceService for an environment URL.
        """
        self._config = config
        self._registry = registry
        self._credential_cache = credential_cache
        self._favorites = favorites
        self._open_browser = open_browser
        self._fs = fs or LocalFileSystem()
        self._tracker = tracker or SyncStateTracker(self._fs)
        self._session_factory = session_factory
        self._service_factory = service_factory

        self._sessions: dict[str, TokenSessionManager] = {}
        self._active: ConnectionIdentity | None = None
        self._service: WebResourceService | None = None

    @property
    def active_connection(self) -> ConnectionIdentity | None:
        return self._active

    @property
    def is_connected(self) -> bool:
        return self._active is not None

    @property
    def tracker(self) -> SyncStateTracker:
        return self._tracker

    def session_for(self, connection: ConnectionIdentity) -> TokenSessionManager:
        """Return the connection's session manager, creating it on first use."""
        manager = self._sessions.get(connection.id)
        if manager is None:
            manager = self._session_factory(connection, self._credential_cache, self._config)
            self._sessions[connection.id] = manager
        return manager

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    async def connect(self, connection_id: str) -> Credential:
        """Make a registered connection the active one.

        Raises:
            KeyError: If the connection id is not registered.
            ConfigurationError: If no client id is configured.
            AuthenticationError: If sign-in failed; the controller is left
                not connected.
        """
        connection = self._registry.get(connection_id)
        if connection is None:
            raise KeyError(f"Unknown connection id: {connection_id}")

        self.disconnect()
        manager = self.session_for(connection)
        try:
            await asyncio.to_thread(manager.initialize)
            credential = await manager.connect(self._open_browser)
        except (AuthenticationError, ConfigurationError):
            logger.error("[connect] connection failed; connection_id:%s", connection_id, exc_info=True)
            self.disconnect()
            raise

        self._active = connection
        self._service = self._service_factory(connection.remote_base_url, self._config)
        logger.info(
            "[connect] connected; connection_id:%s;name:%s", connection.id, connection.display_name
        )
        return credential

    def disconnect(self) -> None:
        if self._active is not None:
            logger.info("[disconnect] disconnected; connection_id:%s", self._active.id)
        self._active = None
        self._service = None
        self._tracker.reset_all()

    async def remove_connection(self, connection_id: str) -> bool:
        """Unregister a connection, signing it out and deleting its credentials.

        Returns:
            True if the connection existed.
        """
        if self._active is not None and self._active.id == connection_id:
            self.disconnect()
        manager = self._sessions.pop(connection_id, None)
        if manager is not None:
            await manager.sign_out()
        await asyncio.to_thread(self._favorites.delete, connection_id)
        return await asyncio.to_thread(self._registry.remove, connection_id)

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def list_solutions(self) -> list[Solution]:
        """List the environment's solutions, flagging the user's favorites."""
        service = self._require_service()
        credential = await self._credential()
        solutions = await asyncio.to_thread(service.get_solutions, credential.access_token)
        assert self._active is not None
        favorites = await asyncio.to_thread(self._favorites.load, self._active.id)
        return [replace(s, is_favorite=s.solution_id in favorites) for s in solutions]

    async def add_favorite_solution(self, solution_id: str) -> None:
        """Mark a solution as a favorite for the active connection."""
        connection = self._require_connection()
        await asyncio.to_thread(self._favorites.add, connection.id, solution_id)

    async def remove_favorite_solution(self, solution_id: str) -> None:
        connection = self._require_connection()
        await asyncio.to_thread(self._favorites.remove, connection.id, solution_id)

    async def load_resource_tree(self, solution_id: str) -> ResourceTreeResult:
        """List a solution's web resources and rebuild the whole tree."""
        service = self._require_service()
        credential = await self._credential()
        descriptors = await asyncio.to_thread(
            service.get_web_resources, credential.access_token, solution_id
        )
        skipped: list[MalformedResourceNameError] = []
        root = build_tree(descriptors, errors=skipped)
        if skipped:
            logger.warning(
                "[load_resource_tree] skipped malformed names; solution_id:%s;count:%d",
                solution_id,
                len(skipped),
            )
        return ResourceTreeResult(root=root, skipped=skipped)

    # ------------------------------------------------------------------
    # Pull / publish
    # ------------------------------------------------------------------

    def local_path_for(self, namespaced_name: str) -> str:
        """Map a namespaced name into the workspace, creating parent folders.

        Raises:
            MalformedResourceNameError: If the name is malformed or would
                escape the workspace root.
        """
        segments = split_name(namespaced_name)
        if any(segment in (".", "..") for segment in segments):
            raise MalformedResourceNameError(namespaced_name)
        folder = os.path.join(self._config.workspace_root, *segments[:-1])
        self._fs.mkdir_recursive(folder)
        return os.path.normpath(os.path.join(folder, segments[-1]))

    async def pull(self, file_node: FileNode, acknowledge: Acknowledge | None = None) -> str:
        """Download a web resource into the workspace and link it.

        If another user changed the remote copy and it differs from the local
        file, ``acknowledge`` is awaited with the warning before the local
        file is overwritten.

        Returns:
            The local path written.
        """
        service = self._require_service()
        credential = await self._credential()
        remote = await asyncio.to_thread(
            service.get_web_resource_content, credential.access_token, file_node.remote_id
        )
        local_path = await asyncio.to_thread(self.local_path_for, file_node.namespaced_name)

        decision = await asyncio.to_thread(
            self._tracker.before_pull,
            local_path,
            file_node.remote_id,
            content_hash(remote.content),
            remote.modified_by,
            credential.display_name,
        )
        if decision.action is PullAction.WARN_THEN_OVERWRITE and decision.warning is not None:
            if acknowledge is not None:
                await acknowledge(decision.warning)
            else:
                logger.warning("[pull] %s", decision.reason)

        await asyncio.to_thread(self._fs.write_file, local_path, remote.content)
        await asyncio.to_thread(self._tracker.after_pull, local_path, file_node.remote_id)
        logger.info("[pull] pulled; remote_id:%s;path:%s", file_node.remote_id, local_path)
        return local_path

    async def publish(self, local_path: str) -> None:
        """Upload and publish a previously pulled file.

        Raises:
            NotConnectedError: If no connection is active.
            NotLinkedError: If the file was never pulled through this workspace.
        """
        service = self._require_service()
        remote_id = self._tracker.require_remote_id(local_path)
        credential = await self._credential()
        content = await asyncio.to_thread(self._fs.read_file, local_path)
        await asyncio.to_thread(
            service.publish_web_resource, credential.access_token, remote_id, content
        )
        self._tracker.after_publish(local_path, remote_id, content_hash(content))

    async def on_local_save(self, local_path: str) -> None:
        await asyncio.to_thread(self._tracker.on_local_save, local_path)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _require_connection(self) -> ConnectionIdentity:
        if self._active is None:
            raise NotConnectedError("No active connection. Connect to an environment first.")
        return self._active

    def _require_service(self) -> WebResourceService:
        if self._active is None or self._service is None:
            raise NotConnectedError("No active connection. Connect to an environment first.")
        return self._service

    async def _credential(self) -> Credential:
        assert self._active is not None
        manager = self.session_for(self._active)
        try:
            return await manager.acquire_valid_credential(self._open_browser)
        except AuthenticationError:
            logger.error("[_credential] token renewal failed; connection_id:%s", self._active.id)
            self.disconnect()
            raise


def workspace_controller_from_config(config: AppConfig, open_browser: OpenBrowser) -> WorkspaceController:
    """Construct a WorkspaceController from application configuration.

    Creates the configured SecretStore, then wires the credential cache,
    favorites and connection registry on top of it.

    Args:
        config: Application configuration instance.
        open_browser: Coroutine function that opens the login URL.

    Returns:
        Configured WorkspaceController instance.
    """
    store = secret_store_from_config(config)
    credential_cache = CredentialCache(store)
    registry = ConnectionRegistry(store, credential_cache)
    return WorkspaceController(
        config=config,
        registry=registry,
        credential_cache=credential_cache,
        favorites=FavoriteSolutions(store),
        open_browser=open_browser,
    )
