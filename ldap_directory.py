"""
LDAP-backed local directory for diffsync
"""

import os
import logging
from typing import Dict, List, Optional

import ldap
import ldap.dn
import ldap.modlist

from local_directory import LocalDirectory
from models import SKIP_ATTRIBUTE, LocalGroup, LocalUser


logger = logging.getLogger(__name__)


def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode('utf-8')
    return value


def _first(attrs: Dict[str, list], name: str) -> Optional[str]:
    values = attrs.get(name)
    if not values:
        return None
    return _decode(values[0])


class LDAPDirectory(LocalDirectory):
    """
    Local directory loaded from an LDAP server.
    Users are inetOrgPerson entries, groups are groupOfNames entries; DNs are used as local ids.
    Creating users, groups and memberships writes the entries back to LDAP.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.ldap_conn = None
        self.user_base_dn = os.getenv("LDAP_USER_BASE_DN", os.getenv("LDAP_GROUP_BASE_DN"))
        self.group_base_dn = os.getenv("LDAP_GROUP_BASE_DN")
        self.user_filter = os.getenv("LDAP_USER_FILTER", "(objectClass=inetOrgPerson)")
        self.group_filter = os.getenv("LDAP_GROUP_FILTER", "(objectClass=groupOfNames)")
        self.member_attribute = os.getenv("LDAP_MEMBER_ATTRIBUTE", "member")
        self.skip_attribute = os.getenv("LDAP_SKIP_ATTRIBUTE")
        self.empty_group_member = os.getenv("LDAP_EMPTY_GROUP_MEMBER", os.getenv("LDAP_BIND_DN"))

    def connect_ldap(self):
        """Establish connection to LDAP server."""
        server = os.getenv("LDAP_SERVER")
        bind_dn = os.getenv("LDAP_BIND_DN")
        bind_password = os.getenv("LDAP_BIND_PASSWORD")
        use_tls = os.getenv("LDAP_USE_TLS", "false").lower() == "true"
        ca_cert_file = os.getenv("LDAP_CA_CERT_FILE")

        logger.info(f"Connecting to LDAP server: {server}")

        try:
            # Configure TLS certificate verification if CA cert is provided
            if ca_cert_file and os.path.exists(ca_cert_file):
                logger.info(f"Using custom CA certificate: {ca_cert_file}")
                ldap.set_option(ldap.OPT_X_TLS_CACERTFILE, ca_cert_file)
                ldap.set_option(ldap.OPT_X_TLS_REQUIRE_CERT, ldap.OPT_X_TLS_DEMAND)
            elif ca_cert_file:
                logger.warning(f"CA certificate file not found: {ca_cert_file}")

            self.ldap_conn = ldap.initialize(server)
            self.ldap_conn.protocol_version = ldap.VERSION3

            if use_tls and server.startswith("ldap://"):
                self.ldap_conn.start_tls_s()

            self.ldap_conn.simple_bind_s(bind_dn, bind_password)
            logger.info("Successfully connected to LDAP")
        except ldap.LDAPError as e:
            logger.error(f"Failed to connect to LDAP: {e}")
            raise

    def disconnect_ldap(self):
        """Close LDAP connection."""
        if self.ldap_conn:
            self.ldap_conn.unbind_s()
            self.ldap_conn = None
            logger.info("Disconnected from LDAP")

    def load(self):
        """Load users and groups from LDAP."""
        logger.info("Loading data from LDAP")

        if not self.ldap_conn:
            self.connect_ldap()

        self._load_users()
        self._load_groups()

    def _custom_attributes(self, attrs: Dict[str, list]) -> Dict[str, str]:
        if self.skip_attribute and (_first(attrs, self.skip_attribute) or "").lower() == "true":
            return {SKIP_ATTRIBUTE: "true"}
        return {}

    def _attrlist(self, *names: str) -> List[str]:
        attrlist = list(names)
        if self.skip_attribute:
            attrlist.append(self.skip_attribute)
        return attrlist

    def _load_users(self):
        try:
            results = self.ldap_conn.search_s(
                self.user_base_dn,
                ldap.SCOPE_SUBTREE,
                self.user_filter,
                self._attrlist('uid', 'mail', 'givenName', 'sn')
            )
        except ldap.LDAPError as e:
            logger.error(f"LDAP user search failed: {e}")
            raise

        user_count = 0
        for dn, attrs in results:
            if not dn:
                continue

            username = _first(attrs, 'uid')
            if not username:
                logger.warning(f"User {dn} has no uid attribute, skipping")
                continue

            self.add(LocalUser(
                id=dn,
                username=username,
                email=_first(attrs, 'mail'),
                first_name=_first(attrs, 'givenName'),
                last_name=_first(attrs, 'sn'),
                custom_attributes=self._custom_attributes(attrs),
            ))
            user_count += 1

        logger.info(f"Loaded {user_count} users from LDAP")

    def _load_groups(self):
        try:
            results = self.ldap_conn.search_s(
                self.group_base_dn,
                ldap.SCOPE_SUBTREE,
                self.group_filter,
                self._attrlist('cn', self.member_attribute)
            )
        except ldap.LDAPError as e:
            logger.error(f"LDAP group search failed: {e}")
            raise

        entries = []
        for dn, attrs in results:
            if not dn:
                continue
            if 'cn' not in attrs or len(attrs['cn']) == 0:
                logger.warning(f"Group {dn} has no cn attribute, skipping")
                continue
            entries.append((dn, attrs))

        group_dns = {dn for dn, _ in entries}
        for dn, attrs in entries:
            members = []
            subgroups = []
            for member in attrs.get(self.member_attribute, []):
                member = _decode(member)
                if member in group_dns:
                    subgroups.append(member)
                elif self.get_user(member) is not None:
                    members.append(member)
                else:
                    logger.debug(f"Ignoring member {member} of {dn}: not a loaded user or group")

            self.add(LocalGroup(
                id=dn,
                name=_first(attrs, 'cn'),
                members=members,
                subgroups=subgroups,
                custom_attributes=self._custom_attributes(attrs),
            ))

        logger.info(f"Loaded {len(entries)} groups from LDAP")

    def new_user_id(self, username: str) -> str:
        return f"uid={ldap.dn.escape_dn_chars(username)},{self.user_base_dn}"

    def new_group_id(self, name: str) -> str:
        return f"cn={ldap.dn.escape_dn_chars(name)},{self.group_base_dn}"

    def create_user(self, username: str, email: Optional[str] = None,
                    first_name: Optional[str] = None, last_name: Optional[str] = None,
                    enabled: bool = True) -> LocalUser:
        dn = self.new_user_id(username)
        entry = {
            'objectClass': [b'inetOrgPerson'],
            'uid': [username.encode('utf-8')],
            'cn': [" ".join(p for p in (first_name, last_name) if p).encode('utf-8') or username.encode('utf-8')],
            'sn': [(last_name or username).encode('utf-8')],
        }
        if first_name:
            entry['givenName'] = [first_name.encode('utf-8')]
        if email:
            entry['mail'] = [email.encode('utf-8')]

        try:
            self.ldap_conn.add_s(dn, ldap.modlist.addModlist(entry))
        except ldap.LDAPError as e:
            logger.error(f"Failed to create LDAP user {dn}: {e}")
            raise

        user = LocalUser(id=dn, username=username, email=email,
                         first_name=first_name, last_name=last_name, enabled=enabled)
        self.add(user)
        logger.info(f"Created LDAP user {dn}")
        return user

    def create_group(self, name: str) -> LocalGroup:
        dn = self.new_group_id(name)
        # groupOfNames requires at least one member
        entry = {
            'objectClass': [b'groupOfNames'],
            'cn': [name.encode('utf-8')],
            self.member_attribute: [self.empty_group_member.encode('utf-8')],
        }

        try:
            self.ldap_conn.add_s(dn, ldap.modlist.addModlist(entry))
        except ldap.LDAPError as e:
            logger.error(f"Failed to create LDAP group {dn}: {e}")
            raise

        group = LocalGroup(id=dn, name=name)
        self.add(group)
        logger.info(f"Created LDAP group {dn}")
        return group

    def join_group(self, user: LocalUser, group: LocalGroup) -> None:
        if user.id in group.members:
            return
        try:
            self.ldap_conn.modify_s(group.id, [(ldap.MOD_ADD, self.member_attribute, [user.id.encode('utf-8')])])
        except ldap.TYPE_OR_VALUE_EXISTS:
            logger.debug(f"{user.id} is already a member of {group.id}")
        except ldap.LDAPError as e:
            logger.error(f"Failed to add {user.id} to {group.id}: {e}")
            raise
        super().join_group(user, group)
