#!/usr/bin/env python3
"""
LDAP to SCIM Directory Sync

This script reconciles the users and groups of an LDAP directory with a remote
SCIM 2.0 server: remote resources are imported and/or local entities are pushed,
as configured by the SCIM_* environment variables.
"""

import os
import sys
import logging
from dotenv import load_dotenv
from sqlalchemy.orm import Session

from config import SyncConfig
from exceptions import ConfigError
from ldap_directory import LDAPDirectory
from mapping_store import Base, MappingStore, create_mapping_engine
from scim_client import ScimClient
from sync_engine import SyncEngine


# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# Load environment variables
load_dotenv()


def open_mapping_session() -> Session:
    """Open a session on the mapping database, creating the table if needed."""
    db_url = os.getenv("MAPPING_DB_URL", "sqlite:///scim_mappings.db")
    engine = create_mapping_engine(db_url)
    Base.metadata.create_all(engine)
    logger.info(f"Using mapping database: {engine.url.render_as_string(hide_password=True)}")
    return Session(engine)


def sync_ldap_to_scim():
    """
    Main sync function.
    Runs import and refresh for users and groups against the SCIM endpoint.
    """
    logger.info("Starting LDAP to SCIM sync")

    try:
        config = SyncConfig.from_env()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    if not config.sync_import and not config.sync_refresh:
        logger.warning("Neither SCIM_SYNC_IMPORT nor SCIM_SYNC_REFRESH is enabled - nothing to do")

    directory = LDAPDirectory(tenant_id=config.tenant_id)
    client = ScimClient(config)
    session = open_mapping_session()
    engine = SyncEngine(config, directory, MappingStore(session, config.tenant_id, config.connector_id), client)

    try:
        # Connect to LDAP and load users and groups
        directory.connect_ldap()
        directory.load()

        result = engine.sync_all()
        session.commit()

        logger.info(f"Sync completed: {result.status}")
        if result.failed:
            logger.warning(f"Failed users: {result.failed_users}")
            logger.warning(f"Failed groups: {result.failed_groups}")

    except Exception as e:
        logger.error(f"Sync failed: {e}", exc_info=True)
        session.rollback()
        sys.exit(1)

    finally:
        # Cleanup
        directory.disconnect_ldap()
        engine.close()
        session.close()


if __name__ == "__main__":
    sync_ldap_to_scim()
