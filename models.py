"""
DiffSync models for the local identity directory
"""

from typing import Dict, List, Optional

from diffsync import DiffSyncModel


# Entities carrying this attribute set to "true" are never propagated
SKIP_ATTRIBUTE = "scim-skip"


class LocalUser(DiffSyncModel):
    """
    DiffSync model representing a user of the local directory.
    The id is the directory's own stable identifier (a DN for LDAP).
    """
    _modelname = "user"
    _identifiers = ("id",)
    _attributes = ("username", "email", "first_name", "last_name", "enabled")

    id: str
    username: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    enabled: bool = True
    custom_attributes: Dict[str, str] = {}

    @property
    def skipped(self) -> bool:
        return self.custom_attributes.get(SKIP_ATTRIBUTE, "").lower() == "true"


class LocalGroup(DiffSyncModel):
    """
    DiffSync model representing a group of the local directory.
    Members are local user ids, subgroups are local group ids.
    """
    _modelname = "group"
    _identifiers = ("id",)
    _attributes = ("name", "members", "subgroups")

    id: str
    name: str
    members: List[str] = []
    subgroups: List[str] = []
    custom_attributes: Dict[str, str] = {}

    @property
    def skipped(self) -> bool:
        return self.custom_attributes.get(SKIP_ATTRIBUTE, "").lower() == "true"
