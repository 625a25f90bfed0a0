#!/usr/bin/env python3
"""
Check the LDAP to SCIM sync configuration before running sync.py
"""

import os
from dotenv import load_dotenv

from config import OPTIONS, SyncConfig, env_name
from exceptions import ConfigError

# Load environment variables
load_dotenv()

REQUIRED_VARS = [
    'LDAP_SERVER',
    'LDAP_BIND_DN',
    'LDAP_BIND_PASSWORD',
    'LDAP_GROUP_BASE_DN',
    'SCIM_ENDPOINT',
]

SECRET_VARS = {'LDAP_BIND_PASSWORD', 'SCIM_AUTH_PASS'}


def mask(name, value):
    if value and name in SECRET_VARS:
        return '*' * 8
    return value


def validate_config():
    """Validate that all required configuration is set and the SCIM options parse"""
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print("❌ Missing required configuration variables:")
        for var in missing:
            print(f"   - {var}")
        return False

    try:
        SyncConfig.from_env()
    except ConfigError as e:
        print(f"❌ Invalid SCIM configuration: {e}")
        return False

    print("✅ All required configuration variables are set")
    return True


def display_config():
    """Display current configuration (masking sensitive values)"""
    print("\n📋 Current Configuration:")
    print(f"   LDAP Server: {os.getenv('LDAP_SERVER')}")
    print(f"   LDAP Bind DN: {os.getenv('LDAP_BIND_DN')}")
    print(f"   LDAP Bind Password: {mask('LDAP_BIND_PASSWORD', os.getenv('LDAP_BIND_PASSWORD'))}")
    print(f"   LDAP User Base DN: {os.getenv('LDAP_USER_BASE_DN', os.getenv('LDAP_GROUP_BASE_DN'))}")
    print(f"   LDAP Group Base DN: {os.getenv('LDAP_GROUP_BASE_DN')}")
    print(f"   LDAP User Filter: {os.getenv('LDAP_USER_FILTER', '(objectClass=inetOrgPerson)')}")
    print(f"   LDAP Group Filter: {os.getenv('LDAP_GROUP_FILTER', '(objectClass=groupOfNames)')}")
    print(f"   LDAP Member Attribute: {os.getenv('LDAP_MEMBER_ATTRIBUTE', 'member')}")
    print(f"   Mapping Database: {os.getenv('MAPPING_DB_URL', 'sqlite:///scim_mappings.db')}")
    for option in OPTIONS:
        name = env_name(option)
        value = os.getenv(name)
        if value is not None:
            print(f"   {name}: {mask(name, value)}")
    print()


if __name__ == "__main__":
    print("🔍 LDAP to SCIM Sync - Configuration Validator\n")

    if validate_config():
        display_config()
        print("✅ Configuration is valid. You can now run:")
        print("   python sync.py")
    else:
        print("\n❌ Please update your .env file with the missing configuration")
