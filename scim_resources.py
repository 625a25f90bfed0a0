"""
SCIM 2.0 resource payloads exchanged with the remote directory
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
GROUP_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:Group"
LIST_RESPONSE_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
PATCH_OP_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"

SCIM_CONTENT_TYPE = "application/scim+json"
JSON_CONTENT_TYPE = "application/json"


class ResourceType(str, Enum):
    """The kinds of resources kept in sync."""
    USER = "User"
    GROUP = "Group"

    @property
    def endpoint(self) -> str:
        return f"{self.value}s"


class PatchOp(str, Enum):
    ADD = "add"
    REPLACE = "replace"
    REMOVE = "remove"


@dataclass
class PatchOperation:
    op: PatchOp
    path: str
    value: Any = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {"op": self.op.value, "path": self.path}
        if self.value is not None:
            payload["value"] = self.value
        return payload


def patch_request(operations: List[PatchOperation]) -> Dict[str, Any]:
    """Wrap operations into a PatchOp message body."""
    return {
        "schemas": [PATCH_OP_SCHEMA],
        "Operations": [operation.to_payload() for operation in operations],
    }


@dataclass
class ScimMember:
    value: str
    ref: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload = {"value": self.value}
        if self.ref:
            payload["$ref"] = self.ref
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ScimMember":
        return cls(value=data.get("value"), ref=data.get("$ref"))


@dataclass
class ScimGroup:
    """SCIM Group resource."""
    id: Optional[str] = None
    external_id: Optional[str] = None
    display_name: Optional[str] = None
    members: List[ScimMember] = field(default_factory=list)
    meta_location: Optional[str] = None

    resource_type = ResourceType.GROUP

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"schemas": [GROUP_SCHEMA]}
        if self.id:
            payload["id"] = self.id
        if self.external_id:
            payload["externalId"] = self.external_id
        payload["displayName"] = self.display_name
        if self.members:
            payload["members"] = [member.to_payload() for member in self.members]
        if self.meta_location:
            payload["meta"] = {"resourceType": "Group", "location": self.meta_location}
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ScimGroup":
        return cls(
            id=data.get("id"),
            external_id=data.get("externalId"),
            display_name=data.get("displayName"),
            members=[ScimMember.from_payload(m) for m in data.get("members") or [] if m.get("value")],
            meta_location=(data.get("meta") or {}).get("location"),
        )


@dataclass
class ScimUser:
    """SCIM User resource (core schema subset)."""
    id: Optional[str] = None
    external_id: Optional[str] = None
    user_name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None
    active: bool = True
    meta_location: Optional[str] = None

    resource_type = ResourceType.USER

    def emails_payload(self) -> List[Dict[str, Any]]:
        if not self.email:
            return []
        return [{"value": self.email, "type": "work", "primary": True}]

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"schemas": [USER_SCHEMA]}
        if self.id:
            payload["id"] = self.id
        if self.external_id:
            payload["externalId"] = self.external_id
        payload["userName"] = self.user_name
        name = {}
        if self.given_name:
            name["givenName"] = self.given_name
        if self.family_name:
            name["familyName"] = self.family_name
        if name:
            payload["name"] = name
        if self.display_name:
            payload["displayName"] = self.display_name
        emails = self.emails_payload()
        if emails:
            payload["emails"] = emails
        payload["active"] = self.active
        if self.meta_location:
            payload["meta"] = {"resourceType": "User", "location": self.meta_location}
        return payload

    @classmethod
    def from_payload(cls, data: Dict[str, Any]) -> "ScimUser":
        name = data.get("name") or {}
        return cls(
            id=data.get("id"),
            external_id=data.get("externalId"),
            user_name=data.get("userName"),
            given_name=name.get("givenName"),
            family_name=name.get("familyName"),
            display_name=data.get("displayName"),
            email=_primary_email(data.get("emails") or []),
            active=data.get("active", True),
            meta_location=(data.get("meta") or {}).get("location"),
        )


def _primary_email(emails: List[Dict[str, Any]]) -> Optional[str]:
    for email in emails:
        if email.get("primary"):
            return email.get("value")
    if emails:
        return emails[0].get("value")
    return None


@dataclass
class ScimListResponse:
    total_results: int
    start_index: int
    items_per_page: int
    resources: List[Any]

    @classmethod
    def from_payload(cls, data: Dict[str, Any], resource_class) -> "ScimListResponse":
        resources = [resource_class.from_payload(r) for r in data.get("Resources") or []]
        return cls(
            total_results=int(data.get("totalResults", len(resources))),
            start_index=int(data.get("startIndex", 1)),
            items_per_page=int(data.get("itemsPerPage", len(resources))),
            resources=resources,
        )
