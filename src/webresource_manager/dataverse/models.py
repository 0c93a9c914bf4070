"""Data models and field names for Dataverse solutions and web resources."""

from dataclasses import dataclass

# Web API entity sets and actions
ENTITY_SOLUTIONS = "solutions"
ENTITY_SOLUTION_COMPONENTS = "solutioncomponents"
ENTITY_WEB_RESOURCES = "webresourceset"
ACTION_PUBLISH_XML = "PublishXml"

# Web API JSON field names
FIELD_SOLUTION_ID = "solutionid"
FIELD_FRIENDLY_NAME = "friendlyname"
FIELD_UNIQUE_NAME = "uniquename"
FIELD_OBJECT_ID = "objectid"
FIELD_WEB_RESOURCE_ID = "webresourceid"
FIELD_NAME = "name"
FIELD_DISPLAY_NAME = "displayname"
FIELD_CONTENT = "content"
FIELD_MODIFIED_BY = "_modifiedby_value"
FIELD_PARAMETER_XML = "ParameterXml"

# OData response keys and annotations
ODATA_VALUE = "value"
ODATA_NEXT_LINK = "@odata.nextLink"
ANNOTATION_FORMATTED_VALUE = "@OData.Community.Display.V1.FormattedValue"

# Solution component type code for web resources
COMPONENT_TYPE_WEB_RESOURCE = 61


@dataclass(frozen=True)
class Solution:
    """An unmanaged, visible solution.

    Attributes:
        is_favorite: Whether the user marked the solution as a favorite for
            the connection it was listed from.
    """

    solution_id: str
    friendly_name: str
    unique_name: str
    is_favorite: bool = False


@dataclass(frozen=True)
class WebResourceContent:
    """The downloaded body of one web resource.

    Attributes:
        remote_id: webresourceid of the record.
        name: Namespaced logical name.
        content: Decoded file bytes.
        modified_by: Display name of the user who last modified the record,
            or None if the server did not report one.
    """

    remote_id: str
    name: str
    content: bytes
    modified_by: str | None
