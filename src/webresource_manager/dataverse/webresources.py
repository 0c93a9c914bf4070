"""Solution and web resource operations on top of the Web API transport."""

from __future__ import annotations

import base64
import logging
from typing import TYPE_CHECKING, Any
from urllib.parse import quote

from webresource_manager.config import DEFAULT_WEB_RESOURCE_BATCH_SIZE
from webresource_manager.dataverse.client import DataverseClient
from webresource_manager.dataverse.models import (
    ACTION_PUBLISH_XML,
    ANNOTATION_FORMATTED_VALUE,
    COMPONENT_TYPE_WEB_RESOURCE,
    ENTITY_SOLUTION_COMPONENTS,
    ENTITY_SOLUTIONS,
    ENTITY_WEB_RESOURCES,
    FIELD_CONTENT,
    FIELD_FRIENDLY_NAME,
    FIELD_MODIFIED_BY,
    FIELD_NAME,
    FIELD_OBJECT_ID,
    FIELD_PARAMETER_XML,
    FIELD_SOLUTION_ID,
    FIELD_UNIQUE_NAME,
    FIELD_WEB_RESOURCE_ID,
    ODATA_NEXT_LINK,
    ODATA_VALUE,
    Solution,
    WebResourceContent,
)
from webresource_manager.tree.models import RemoteResourceDescriptor

if TYPE_CHECKING:
    from webresource_manager.config import AppConfig

logger = logging.getLogger(__name__)


def _odata_string(value: str) -> str:
    """Quote a value as an OData string literal."""
    return "'" + value.replace("'", "''") + "'"


def publish_xml(remote_id: str) -> str:
    """ParameterXml that publishes a single web resource."""
    return (
        "<importexportxml><webresources>"
        f"<webresource>{{{remote_id}}}</webresource>"
        "</webresources></importexportxml>"
    )


class WebResourceService:
    """Lists solutions and web resources, downloads and publishes content."""

    def __init__(
        self,
        client: DataverseClient,
        solution_name_filter: str = "",
        solution_sort_ascending: bool = True,
        batch_size: int = DEFAULT_WEB_RESOURCE_BATCH_SIZE,
    ) -> None:
        """Initialise the service.

        Args:
            client: Transport bound to one environment.
            solution_name_filter: Only list solutions whose friendly name contains this.
            solution_sort_ascending: Order solutions by friendly name ascending.
            batch_size: Number of web resource ids resolved per request.
        """
        self._client = client
        self._solution_name_filter = solution_name_filter
        self._solution_sort_ascending = solution_sort_ascending
        self._batch_size = batch_size

    def get_solutions(self, token: str) -> list[Solution]:
        """Return the unmanaged, visible solutions of the environment."""
        filter_expr = "ismanaged eq false and isvisible eq true"
        if self._solution_name_filter:
            filter_expr += (
                f" and contains({FIELD_FRIENDLY_NAME},{_odata_string(self._solution_name_filter)})"
            )
        order = "asc" if self._solution_sort_ascending else "desc"
        path = (
            f"/{ENTITY_SOLUTIONS}?$select={FIELD_FRIENDLY_NAME},{FIELD_UNIQUE_NAME},{FIELD_SOLUTION_ID}"
            f"&$filter={quote(filter_expr)}&$orderby={FIELD_FRIENDLY_NAME}%20{order}"
        )
        solutions = [
            Solution(
                solution_id=raw[FIELD_SOLUTION_ID],
                friendly_name=raw.get(FIELD_FRIENDLY_NAME, ""),
                unique_name=raw.get(FIELD_UNIQUE_NAME, ""),
            )
            for raw in self._get_all(path, token)
        ]
        logger.info("[get_solutions] listed solutions; count:%d", len(solutions))
        return solutions

    def get_web_resources(self, token: str, solution_id: str) -> list[RemoteResourceDescriptor]:
        """Return every web resource that belongs to a solution.

        Component ids are resolved to web resource records in batches so the
        request URL stays bounded.
        """
        component_filter = (
            f"_solutionid_value eq {solution_id} and componenttype eq {COMPONENT_TYPE_WEB_RESOURCE}"
        )
        components = self._get_all(
            f"/{ENTITY_SOLUTION_COMPONENTS}?$select={FIELD_OBJECT_ID}&$filter={quote(component_filter)}",
            token,
        )
        object_ids = [c[FIELD_OBJECT_ID] for c in components if c.get(FIELD_OBJECT_ID)]

        descriptors: list[RemoteResourceDescriptor] = []
        for start in range(0, len(object_ids), self._batch_size):
            batch = object_ids[start : start + self._batch_size]
            id_filter = " or ".join(f"{FIELD_WEB_RESOURCE_ID} eq {object_id}" for object_id in batch)
            path = (
                f"/{ENTITY_WEB_RESOURCES}?$select={FIELD_NAME},{FIELD_WEB_RESOURCE_ID}"
                f"&$filter={quote(id_filter)}"
            )
            descriptors.extend(
                RemoteResourceDescriptor(
                    remote_id=raw[FIELD_WEB_RESOURCE_ID],
                    namespaced_name=raw.get(FIELD_NAME) or "",
                )
                for raw in self._get_all(path, token)
            )
        logger.info(
            "[get_web_resources] listed web resources; solution_id:%s;count:%d",
            solution_id,
            len(descriptors),
        )
        return descriptors

    def get_web_resource_content(self, token: str, remote_id: str) -> WebResourceContent:
        """Download and decode the content of one web resource."""
        raw = self._client.get(
            f"/{ENTITY_WEB_RESOURCES}({remote_id})"
            f"?$select={FIELD_NAME},{FIELD_CONTENT},{FIELD_MODIFIED_BY}",
            token,
        )
        encoded = raw.get(FIELD_CONTENT) or ""
        return WebResourceContent(
            remote_id=remote_id,
            name=raw.get(FIELD_NAME, ""),
            content=base64.b64decode(encoded),
            modified_by=raw.get(FIELD_MODIFIED_BY + ANNOTATION_FORMATTED_VALUE),
        )

    def publish_web_resource(self, token: str, remote_id: str, content: bytes) -> None:
        """Upload new content and publish the web resource.

        The record is updated first; publishing only runs if the update succeeded.
        """
        encoded = base64.b64encode(content).decode("ascii")
        self._client.patch(f"/{ENTITY_WEB_RESOURCES}({remote_id})", {FIELD_CONTENT: encoded}, token)
        self._client.post(f"/{ACTION_PUBLISH_XML}", {FIELD_PARAMETER_XML: publish_xml(remote_id)}, token)
        logger.info("[publish_web_resource] published; remote_id:%s;bytes:%d", remote_id, len(content))

    def _get_all(self, path: str, token: str) -> list[dict[str, Any]]:
        """GET a collection, following @odata.nextLink pagination."""
        records: list[dict[str, Any]] = []
        next_path: str | None = path
        while next_path is not None:
            response = self._client.get(next_path, token)
            records.extend(response.get(ODATA_VALUE, []))
            next_link = response.get(ODATA_NEXT_LINK)
            next_path = self._relative_path(next_link) if next_link else None
        return records

    def _relative_path(self, full_url: str) -> str:
        prefix = self._client.api_base
        if full_url.lower().startswith(prefix.lower()):
            return full_url[len(prefix) :]
        # Absolute links outside the API base are passed through as-is.
        return full_url


def web_resource_service_from_config(base_url: str, config: AppConfig) -> WebResourceService:
    """Construct a WebResourceService for one environment.

    Args:
        base_url: Environment URL of the active connection.
        config: Application configuration instance.

    Returns:
        Configured WebResourceService instance.
    """
    return WebResourceService(
        client=DataverseClient(base_url=base_url, api_version=config.api_version),
        solution_name_filter=config.solution_name_filter,
        solution_sort_ascending=config.solution_sort_ascending,
        batch_size=config.web_resource_batch_size,
    )
