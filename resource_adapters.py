"""
Adapters between local directory entities and SCIM resources

An adapter instance handles exactly one resource during one operation: it is
filled from the local entity, the remote resource and/or the stored mapping,
and then renders whichever representation the sync engine needs.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterator, List, Optional, Set, Type

from config import SyncConfig, UsernameSource
from exceptions import MappingLookupError, MappingNotFound
from local_directory import LocalDirectory
from mapping_store import MappingStore, ResourceMapping
from models import LocalGroup, LocalUser
from scim_resources import (
    PatchOp,
    PatchOperation,
    ResourceType,
    ScimGroup,
    ScimMember,
    ScimUser,
)


class ResourceAdapter(ABC):
    """
    Base contract shared by the user and group adapters.

    local_id and external_id are write-once: the first value assigned wins and
    later assignments are ignored.
    """

    resource_type: ResourceType
    resource_class: type

    def __init__(self, directory: LocalDirectory, mappings: MappingStore, config: SyncConfig):
        self.directory = directory
        self.mappings = mappings
        self.config = config
        self.logger = logging.getLogger(f"{__name__}.{type(self).__name__}")
        self._local_id: Optional[str] = None
        self._external_id: Optional[str] = None
        self.skip = False

    @property
    def local_id(self) -> Optional[str]:
        return self._local_id

    @local_id.setter
    def local_id(self, value: Optional[str]) -> None:
        if self._local_id is None:
            self._local_id = value

    @property
    def external_id(self) -> Optional[str]:
        return self._external_id

    @external_id.setter
    def external_id(self, value: Optional[str]) -> None:
        if self._external_id is None:
            self._external_id = value

    @property
    def scim_endpoint(self) -> str:
        return self.resource_type.endpoint

    def location(self) -> str:
        return f"{self.scim_endpoint}/{self.external_id}"

    # -- mapping persistence -------------------------------------------------

    def apply_mapping(self, mapping: ResourceMapping) -> None:
        self.local_id = mapping.local_id
        self.external_id = mapping.external_id

    def to_mapping(self) -> ResourceMapping:
        return self.mappings.new_mapping(self.resource_type.value, self.local_id, self.external_id)

    def get_mapping(self) -> Optional[ResourceMapping]:
        """
        Look up the stored mapping, by local id first and external id second.
        Returns None when there is none; lookup errors are logged and treated
        the same unless strict lookups are configured.
        """
        try:
            if self.local_id is not None:
                return self.mappings.find_by_local_id(self.resource_type.value, self.local_id)
            if self.external_id is not None:
                return self.mappings.find_by_external_id(self.resource_type.value, self.external_id)
        except MappingNotFound:
            pass
        except MappingLookupError as e:
            if self.config.strict_lookups:
                raise
            self.logger.error(f"Mapping lookup failed for {self.describe()}: {e}")
        return None

    def has_mapping(self) -> bool:
        return self.local_id is not None and self._external_id_of(self.resource_type, self.local_id) is not None

    def save_mapping(self) -> ResourceMapping:
        mapping = self.to_mapping()
        self.mappings.save(mapping)
        return mapping

    def delete_mapping(self) -> None:
        self.mappings.delete(self.to_mapping())

    def _external_id_of(self, resource_type: ResourceType, local_id: str) -> Optional[str]:
        try:
            return self.mappings.find_by_local_id(resource_type.value, local_id).external_id
        except MappingNotFound:
            return None
        except MappingLookupError as e:
            if self.config.strict_lookups:
                raise
            self.logger.error(f"Mapping lookup failed for {resource_type.value} {local_id}: {e}")
            return None

    def _local_id_of(self, resource_type: ResourceType, external_id: str) -> Optional[str]:
        try:
            return self.mappings.find_by_external_id(resource_type.value, external_id).local_id
        except MappingNotFound:
            return None
        except MappingLookupError as e:
            if self.config.strict_lookups:
                raise
            self.logger.error(f"Mapping lookup failed for remote {resource_type.value} {external_id}: {e}")
            return None

    # -- variant specific ----------------------------------------------------

    @abstractmethod
    def apply_entity(self, entity) -> None:
        """Populate fields from a local directory entity."""

    @abstractmethod
    def apply_resource(self, resource) -> None:
        """Populate fields from a remote SCIM resource."""

    @abstractmethod
    def to_resource(self, include_meta: bool = False):
        """Render the SCIM resource payload."""

    @abstractmethod
    def to_patch_operations(self) -> List[PatchOperation]:
        """Render the partial update sent when PATCH is enabled."""

    @abstractmethod
    def entity_exists(self) -> bool:
        """Whether the local entity referenced by local_id still exists."""

    @abstractmethod
    def try_to_map(self) -> bool:
        """Link to an existing local entity by a matching key; sets local_id on success."""

    @abstractmethod
    def create_entity(self) -> None:
        """Create the local entity from the adapter fields; sets local_id."""

    @abstractmethod
    def get_resource_stream(self) -> Iterator:
        """Local entities of this kind eligible for propagation."""

    @abstractmethod
    def describe(self) -> str:
        """Human-readable description used in logs and sync results."""

    @abstractmethod
    def remote_filter(self) -> Optional[str]:
        """SCIM filter locating the remote twin of this resource by its natural key."""

    def skip_refresh(self) -> bool:
        return self.skip


class UserAdapter(ResourceAdapter):
    resource_type = ResourceType.USER
    resource_class = ScimUser

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.username: Optional[str] = None
        self.email: Optional[str] = None
        self.first_name: Optional[str] = None
        self.last_name: Optional[str] = None
        self.active = True

    def apply_entity(self, user: LocalUser) -> None:
        self.local_id = user.id
        if self.username is None:
            self.username = user.username
        if self.email is None:
            self.email = user.email
        if self.first_name is None:
            self.first_name = user.first_name
        if self.last_name is None:
            self.last_name = user.last_name
        self.active = user.enabled
        self.skip = user.skipped

    def apply_resource(self, resource: ScimUser) -> None:
        self.external_id = resource.id
        if self.username is None:
            self.username = resource.user_name
        if self.email is None:
            self.email = resource.email
        if self.first_name is None:
            self.first_name = resource.given_name
        if self.last_name is None:
            self.last_name = resource.family_name
        self.active = resource.active

    @property
    def user_name(self) -> Optional[str]:
        """The SCIM userName, taken from the configured source attribute."""
        if self.config.username_source == UsernameSource.EMAIL and self.email:
            return self.email
        return self.username

    @property
    def display_name(self) -> Optional[str]:
        name = " ".join(part for part in (self.first_name, self.last_name) if part)
        return name or self.username

    def to_resource(self, include_meta: bool = False) -> ScimUser:
        user = ScimUser(
            id=self.external_id,
            external_id=self.local_id,
            user_name=self.user_name,
            given_name=self.first_name,
            family_name=self.last_name,
            display_name=self.display_name,
            email=self.email,
            active=self.active,
        )
        if include_meta:
            user.meta_location = self.location()
        return user

    def to_patch_operations(self) -> List[PatchOperation]:
        resource = self.to_resource()
        return [
            PatchOperation(PatchOp.REPLACE, "userName", self.user_name),
            PatchOperation(PatchOp.REPLACE, "name.givenName", self.first_name),
            PatchOperation(PatchOp.REPLACE, "name.familyName", self.last_name),
            PatchOperation(PatchOp.REPLACE, "emails", resource.emails_payload()),
            PatchOperation(PatchOp.REPLACE, "active", self.active),
        ]

    def entity_exists(self) -> bool:
        return self.directory.get_user(self.local_id) is not None

    def try_to_map(self) -> bool:
        user = self.directory.find_user_by_username(self.username)
        if user is None:
            user = self.directory.find_user_by_email(self.email)
        if user is None:
            return False
        self.local_id = user.id
        return True

    def create_entity(self) -> None:
        user = self.directory.create_user(
            username=self.username,
            email=self.email,
            first_name=self.first_name,
            last_name=self.last_name,
            enabled=self.active,
        )
        self.local_id = user.id

    def get_resource_stream(self) -> Iterator[LocalUser]:
        return iter(self.directory.users())

    def describe(self) -> str:
        return f"User(username={self.username}, email={self.email})"

    def remote_filter(self) -> Optional[str]:
        if not self.user_name:
            return None
        return f'userName eq "{filter_value(self.user_name)}"'


class GroupAdapter(ResourceAdapter):
    resource_type = ResourceType.GROUP
    resource_class = ScimGroup

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.display_name: Optional[str] = None
        self.members: Set[str] = set()

    def apply_entity(self, group: LocalGroup) -> None:
        self.local_id = group.id
        if self.display_name is None:
            self.display_name = group.name
        self.members = set(group.members)
        self.skip = group.skipped

    def apply_resource(self, resource: ScimGroup) -> None:
        self.external_id = resource.id
        if self.display_name is None:
            self.display_name = resource.display_name
        if resource.members:
            self.members = set()
            for member in resource.members:
                local_id = self._local_id_of(ResourceType.USER, member.value)
                if local_id is None:
                    self.logger.warning(f"Could not find user mapping for remote user id {member.value}")
                    continue
                self.members.add(local_id)

    def _remote_members(self) -> List[ScimMember]:
        """Translate local member ids to remote user ids, dropping those without a mapping."""
        remote_members = []
        for member in sorted(self.members):
            user = self.directory.get_user(member)
            if user is None:
                self.logger.warning(f"Member {member} of {self.describe()} is not a local user, dropping")
                continue
            external_id = self._external_id_of(ResourceType.USER, user.id)
            if external_id is None:
                self.logger.warning(f"Member {user.username} of {self.describe()} has no remote user, dropping")
                continue
            remote_members.append(ScimMember(value=external_id, ref=f"Users/{external_id}"))
        return remote_members

    def to_resource(self, include_meta: bool = False) -> ScimGroup:
        group = ScimGroup(
            id=self.external_id,
            external_id=self.local_id,
            display_name=self.display_name,
        )
        if self.members:
            group.members = self._remote_members()
        if include_meta:
            group.meta_location = self.location()
        return group

    def to_patch_operations(self) -> List[PatchOperation]:
        if self.members:
            values = [{"value": member.value} for member in self._remote_members()]
            operation = PatchOperation(PatchOp.REPLACE, "members", values)
        else:
            operation = PatchOperation(PatchOp.REMOVE, "members")
        self.logger.info(f"Patching members of {self.describe()}: {operation.to_payload()}")
        return [operation]

    def entity_exists(self) -> bool:
        return self.directory.get_group(self.local_id) is not None

    def try_to_map(self) -> bool:
        # Exact (case-sensitive) display name match
        groups = self.directory.find_groups_by_name(self.display_name)
        if not groups:
            return False
        self.local_id = groups[0].id
        return True

    def create_entity(self) -> None:
        group = self.directory.create_group(self.display_name)
        self.local_id = group.id
        for member in self.members:
            user = self.directory.get_user(member)
            if user is None:
                self.logger.warning(f"Cannot add unknown user {member} to group {self.display_name}")
                continue
            try:
                self.directory.join_group(user, group)
            except Exception as e:
                self.logger.warning(f"Failed to add {user.username} to group {self.display_name}: {e}")

    def get_resource_stream(self) -> Iterator[LocalGroup]:
        return iter(filtered_groups(self.directory, self.config))

    def skip_refresh(self) -> bool:
        return False

    def describe(self) -> str:
        return f"Group(name={self.display_name}, id={self.local_id})"

    def remote_filter(self) -> Optional[str]:
        if not self.display_name:
            return None
        return f'displayName eq "{filter_value(self.display_name)}"'


def filter_value(value: str) -> str:
    """Escape a value for use inside a quoted SCIM filter string."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def filtered_groups(directory: LocalDirectory, config: SyncConfig) -> List[LocalGroup]:
    """
    Groups whose name fully matches one of the group-filter patterns, plus all
    of their (transitive) subgroups. Without a filter every group is returned.
    """
    groups = directory.groups()
    patterns = config.group_patterns
    if not patterns:
        return groups

    included: Dict[str, LocalGroup] = {}
    for group in groups:
        if not any(pattern.fullmatch(group.name) for pattern in patterns):
            continue
        stack = [group]
        while stack:
            current = stack.pop()
            if current.id in included:
                continue
            included[current.id] = current
            stack.extend(directory.subgroups(current))
    return list(included.values())


ADAPTERS: Dict[ResourceType, Type[ResourceAdapter]] = {
    ResourceType.USER: UserAdapter,
    ResourceType.GROUP: GroupAdapter,
}


def build_adapter(resource_type: ResourceType, directory: LocalDirectory,
                  mappings: MappingStore, config: SyncConfig) -> ResourceAdapter:
    """Instantiate the adapter for a resource type."""
    return ADAPTERS[ResourceType(resource_type)](directory, mappings, config)
