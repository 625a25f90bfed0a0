"""
Local identity directory backed by a diffsync store
"""

import uuid
import logging
from typing import Iterator, List, Optional

from diffsync import Adapter
from diffsync.exceptions import ObjectNotFound

from models import LocalGroup, LocalUser


logger = logging.getLogger(__name__)


class LocalDirectory(Adapter):
    """
    DiffSync adapter holding the users and groups of one tenant of the local directory.

    This base class keeps everything in memory; subclasses load the store from a
    real backend and override the create/join operations to write through to it.
    """

    user = LocalUser
    group = LocalGroup
    top_level = ["user", "group"]

    def __init__(self, *args, tenant_id: str = "default", **kwargs):
        super().__init__(*args, **kwargs)
        self.tenant_id = tenant_id

    def get_user(self, user_id: Optional[str]) -> Optional[LocalUser]:
        if not user_id:
            return None
        try:
            return self.get(LocalUser, user_id)
        except ObjectNotFound:
            return None

    def get_group(self, group_id: Optional[str]) -> Optional[LocalGroup]:
        if not group_id:
            return None
        try:
            return self.get(LocalGroup, group_id)
        except ObjectNotFound:
            return None

    def users(self) -> List[LocalUser]:
        return list(self.get_all(LocalUser))

    def groups(self) -> List[LocalGroup]:
        return list(self.get_all(LocalGroup))

    def subgroups(self, group: LocalGroup) -> Iterator[LocalGroup]:
        for subgroup_id in group.subgroups:
            subgroup = self.get_group(subgroup_id)
            if subgroup is None:
                logger.debug(f"Subgroup {subgroup_id} of {group.name} is not loaded, skipping")
                continue
            yield subgroup

    def find_user_by_username(self, username: Optional[str]) -> Optional[LocalUser]:
        if not username:
            return None
        for user in self.get_all(LocalUser):
            if user.username == username:
                return user
        return None

    def find_user_by_email(self, email: Optional[str]) -> Optional[LocalUser]:
        if not email:
            return None
        for user in self.get_all(LocalUser):
            if user.email == email:
                return user
        return None

    def find_groups_by_name(self, name: Optional[str]) -> List[LocalGroup]:
        return [group for group in self.get_all(LocalGroup) if group.name == name]

    def create_user(self, username: str, email: Optional[str] = None,
                    first_name: Optional[str] = None, last_name: Optional[str] = None,
                    enabled: bool = True) -> LocalUser:
        """Create a user in the directory and return it."""
        user = LocalUser(
            id=self.new_user_id(username),
            username=username,
            email=email,
            first_name=first_name,
            last_name=last_name,
            enabled=enabled,
        )
        self.add(user)
        logger.info(f"Created local user {username} ({user.id})")
        return user

    def create_group(self, name: str) -> LocalGroup:
        """Create an empty group in the directory and return it."""
        group = LocalGroup(id=self.new_group_id(name), name=name)
        self.add(group)
        logger.info(f"Created local group {name} ({group.id})")
        return group

    def join_group(self, user: LocalUser, group: LocalGroup) -> None:
        if user.id not in group.members:
            group.members.append(user.id)
            logger.debug(f"Added {user.username} to group {group.name}")

    def remove_user(self, user: LocalUser) -> None:
        for group in self.get_all(LocalGroup):
            if user.id in group.members:
                group.members.remove(user.id)
        self.remove(user)

    def remove_group(self, group: LocalGroup) -> None:
        for parent in self.get_all(LocalGroup):
            if group.id in parent.subgroups:
                parent.subgroups.remove(group.id)
        self.remove(group)

    def new_user_id(self, username: str) -> str:
        return str(uuid.uuid4())

    def new_group_id(self, name: str) -> str:
        return str(uuid.uuid4())
