#!/usr/bin/env python3
"""
Check the LDAP and SCIM connections independently
"""

import os
import sys
import logging
from dotenv import load_dotenv
import ldap

from config import SyncConfig
from exceptions import ConfigError, ScimTransportError
from scim_client import ScimClient
from scim_resources import ResourceType, ScimUser

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

load_dotenv()


def check_ldap_connection():
    """Bind to LDAP and count users and groups"""
    print("\n🔍 Checking LDAP Connection...")

    server = os.getenv("LDAP_SERVER")
    bind_dn = os.getenv("LDAP_BIND_DN")
    bind_password = os.getenv("LDAP_BIND_PASSWORD")
    group_base_dn = os.getenv("LDAP_GROUP_BASE_DN")
    user_base_dn = os.getenv("LDAP_USER_BASE_DN", group_base_dn)

    try:
        conn = ldap.initialize(server)
        conn.protocol_version = ldap.VERSION3
        conn.simple_bind_s(bind_dn, bind_password)
        print(f"✅ Connected to LDAP server: {server}")

        user_filter = os.getenv("LDAP_USER_FILTER", "(objectClass=inetOrgPerson)")
        users = conn.search_s(user_base_dn, ldap.SCOPE_SUBTREE, user_filter, ['uid'])
        print(f"✅ Found {len([r for r in users if r[0] is not None])} users in LDAP")

        group_filter = os.getenv("LDAP_GROUP_FILTER", "(objectClass=groupOfNames)")
        results = conn.search_s(group_base_dn, ldap.SCOPE_SUBTREE, group_filter, ['cn'])

        group_count = len([r for r in results if r[0] is not None])
        print(f"✅ Found {group_count} groups in LDAP")

        # Display first few groups
        if group_count > 0:
            print("\n   Sample groups:")
            for dn, attrs in results[:5]:
                if dn and 'cn' in attrs:
                    cn = attrs['cn'][0]
                    if isinstance(cn, bytes):
                        cn = cn.decode('utf-8')
                    print(f"   - {cn}")

        conn.unbind_s()
        return True

    except ldap.LDAPError as e:
        print(f"❌ LDAP connection failed: {e}")
        return False


def check_scim_connection(client=None):
    """Fetch the first page of remote users"""
    print("\n🔍 Checking SCIM Connection...")

    try:
        if client is None:
            client = ScimClient(SyncConfig.from_env())
        response = client.list(client.gen_url(ResourceType.USER.endpoint), ScimUser, count=5)
    except ConfigError as e:
        print(f"❌ Invalid SCIM configuration: {e}")
        return False
    except ScimTransportError as e:
        print(f"❌ SCIM connection failed: {e}")
        return False

    if not response.success or response.resource is None:
        print(f"❌ SCIM server answered with status {response.status}: {response.body[:200]}")
        return False

    print(f"✅ Connected to SCIM endpoint: {client.base_url}")
    print(f"✅ Found {response.resource.total_results} users on the SCIM server")
    if response.resource.resources:
        print("\n   Sample users:")
        for user in response.resource.resources:
            print(f"   - {user.user_name} ({user.id})")
    return True


def main():
    """Run all checks"""
    print("🧪 Connection Check Script")
    print("=" * 60)

    ldap_ok = check_ldap_connection()
    scim_ok = check_scim_connection()

    print("\n" + "=" * 60)
    print("📊 Check Summary:")
    print(f"   LDAP: {'✅ PASS' if ldap_ok else '❌ FAIL'}")
    print(f"   SCIM: {'✅ PASS' if scim_ok else '❌ FAIL'}")

    if ldap_ok and scim_ok:
        print("\n✅ All checks passed! Ready to run sync.py")
        return 0
    else:
        print("\n❌ Some checks failed. Please check your configuration.")
        return 1


if __name__ == "__main__":
    sys.exit(main())
