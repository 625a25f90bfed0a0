"""
Reconciliation between the local directory and a remote SCIM directory

The engine pushes local users and groups to the SCIM server (refresh) and
pulls remote resources back (import), keeping the mapping table consistent.
Per-resource failures are logged and recorded in the SyncResult; only
failures affecting the whole batch (such as listing remote resources) raise.
"""

import logging
from enum import Enum
from typing import Optional

from config import ImportAction, SyncConfig
from local_directory import LocalDirectory
from mapping_store import MappingStore, ResourceMapping
from resource_adapters import ResourceAdapter, build_adapter
from retry import RetryPolicy
from scim_client import ScimClient, ScimResponse
from scim_resources import ResourceType
from sync_result import SyncResult


logger = logging.getLogger(__name__)


class Outcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    MAPPED = "mapped"
    SKIPPED = "skipped"
    FAILED = "failed"


class SyncEngine:
    """
    Drives create / replace / delete / import / refresh for one connector.

    Every operation works on a freshly built adapter, so no state is shared
    between resources.
    """

    def __init__(self, config: SyncConfig, directory: LocalDirectory, mappings: MappingStore,
                 client: ScimClient, retry_policy: Optional[RetryPolicy] = None):
        self.config = config
        self.directory = directory
        self.mappings = mappings
        self.client = client
        self.retry = retry_policy or RetryPolicy()

    def _adapter(self, resource_type: ResourceType) -> ResourceAdapter:
        return build_adapter(resource_type, self.directory, self.mappings, self.config)

    def _send_create(self, adapter: ResourceAdapter) -> ScimResponse:
        resource = adapter.to_resource(False)
        # The server assigns the id
        resource.id = None
        return self.client.create(adapter.resource_class, f"/{adapter.scim_endpoint}", resource)

    def _send_replace(self, adapter: ResourceAdapter, url: str, use_patch: bool) -> ScimResponse:
        if use_patch:
            return self.client.patch(url, adapter.resource_class, adapter.to_patch_operations())
        return self.client.update(url, adapter.resource_class, adapter.to_resource(False))

    def create(self, resource_type: ResourceType, entity) -> Outcome:
        """Create the remote resource for a local entity and remember the mapping."""
        adapter = self._adapter(resource_type)
        adapter.apply_entity(entity)
        if adapter.skip:
            logger.debug(f"Skipping creation of {adapter.describe()}")
            return Outcome.SKIPPED

        # If a mapping exists it was created by import
        if adapter.has_mapping():
            logger.debug(f"Mapping already exists for {adapter.describe()}, not creating")
            return Outcome.SKIPPED

        logger.debug(f"Creating SCIM resource for {adapter.local_id}")
        response = self.retry.call(f"create-{adapter.local_id}", self._send_create, adapter)

        if not response.success:
            logger.warning(f"Creating {adapter.describe()} returned {response.status}: {response.body}")
            if response.status == 409 and self.config.map_existing(adapter.resource_type):
                return self._map_existing(adapter)

        if response.resource is None or not response.resource.id:
            logger.warning(f"No remote resource returned for {adapter.describe()}, mapping not saved")
            return Outcome.FAILED

        adapter.apply_resource(response.resource)
        adapter.save_mapping()
        return Outcome.CREATED if response.success else Outcome.FAILED

    def _map_existing(self, adapter: ResourceAdapter) -> Outcome:
        """Link a local entity to the remote resource that made its creation conflict."""
        remote_filter = adapter.remote_filter()
        if remote_filter is None:
            return Outcome.FAILED

        response = self.client.list(self.client.gen_url(adapter.scim_endpoint), adapter.resource_class,
                                    filter=remote_filter)
        if not response.success or response.resource is None or len(response.resource.resources) != 1:
            logger.warning(f"No unique remote match for {adapter.describe()} ({remote_filter})")
            return Outcome.FAILED

        remote = response.resource.resources[0]
        if self._external_id_taken(adapter, remote.id):
            logger.warning(f"Remote resource {remote.id} is already mapped, not linking {adapter.describe()}")
            return Outcome.FAILED

        adapter.external_id = remote.id
        adapter.save_mapping()
        logger.info(f"Mapped {adapter.describe()} to existing remote resource {remote.id}")
        return Outcome.MAPPED

    def _external_id_taken(self, adapter: ResourceAdapter, external_id: str) -> bool:
        lookup = self._adapter(adapter.resource_type)
        lookup.external_id = external_id
        return lookup.get_mapping() is not None

    def replace(self, resource_type: ResourceType, entity) -> Outcome:
        """Update the remote resource of an already mapped local entity."""
        adapter = self._adapter(resource_type)
        adapter.apply_entity(entity)
        if adapter.skip:
            logger.debug(f"Skipping update of {adapter.describe()}")
            return Outcome.SKIPPED

        mapping = adapter.get_mapping()
        if mapping is None:
            logger.warning(f"Failed to replace resource {adapter.local_id}, scim mapping not found")
            return Outcome.SKIPPED
        adapter.apply_mapping(mapping)

        url = self.client.gen_url(adapter.scim_endpoint, adapter.external_id)
        use_patch = self.config.use_patch(adapter.resource_type)
        retry_key = f"replace-{adapter.local_id}"
        logger.debug(f"Replacing SCIM resource for {adapter.local_id} at {url}")
        response = self.retry.call(retry_key, self._send_replace, adapter, url, use_patch)

        if not response.success:
            if response.status == 405 and adapter.resource_type == ResourceType.GROUP and not use_patch:
                logger.info(f"PUT not supported for groups (405), patching {adapter.local_id} instead")
                response = self.retry.call(retry_key, self._send_replace, adapter, url, True)
            elif response.status in (400, 404):
                logger.info(f"Resource {adapter.local_id} not found ({response.status}), creating instead")
                response = self._recreate(adapter, mapping)

        if not response.success:
            logger.warning(f"Updating {adapter.describe()} returned {response.status}: {response.body}")
            return Outcome.FAILED
        return Outcome.UPDATED

    def _recreate(self, adapter: ResourceAdapter, mapping: ResourceMapping) -> ScimResponse:
        response = self.retry.call(f"create-{adapter.local_id}", self._send_create, adapter)
        if not response.success:
            return response
        if response.resource is None or not response.resource.id:
            return ScimResponse(success=False, status=response.status,
                                body="created resource carries no id")

        # Overwrite the stale external id in place
        self.mappings.update_external_id(mapping, response.resource.id)
        logger.info(f"Re-created {adapter.describe()} as remote resource {response.resource.id}")
        return response

    def delete(self, resource_type: ResourceType, local_id: str) -> bool:
        """Delete the remote resource of a deleted local entity and drop its mapping."""
        adapter = self._adapter(resource_type)
        adapter.local_id = local_id
        logger.debug(f"Deleting SCIM resource for {local_id}")

        mapping = adapter.get_mapping()
        if mapping is None:
            logger.warning(f"Failed to delete resource {local_id}, scim mapping not found")
            return False
        adapter.apply_mapping(mapping)

        url = self.client.gen_url(adapter.scim_endpoint, adapter.external_id)
        response = self.retry.call(f"delete-{local_id}", self.client.delete, url, adapter.resource_class)
        if not response.success:
            logger.warning(f"Deleting {url} returned {response.status}: {response.body}")

        self.mappings.delete(mapping)
        return response.success

    def refresh_resources(self, resource_type: ResourceType, result: SyncResult) -> None:
        """Push every eligible local entity to the remote directory."""
        resource_type = ResourceType(resource_type)
        logger.info(f"Refreshing {resource_type.value} resources")

        for entity in self._adapter(resource_type).get_resource_stream():
            adapter = self._adapter(resource_type)
            info = getattr(entity, "id", "unknown")
            try:
                adapter.apply_entity(entity)
                info = adapter.describe()
                logger.info(f"Reconciling local resource {adapter.local_id}: {info}")
                if adapter.skip_refresh():
                    logger.info(f"Skipping refresh for {info}")
                    continue

                if adapter.get_mapping() is None:
                    logger.info(f"Creating remote resource for {info}")
                    outcome = self.create(resource_type, entity)
                else:
                    logger.info(f"Updating remote resource for {info}")
                    outcome = self.replace(resource_type, entity)
                self._track(result, resource_type, outcome, info)
            except Exception as e:
                logger.error(f"Failed to refresh resource {info}: {e}", exc_info=True)
                result.add_failed(resource_type, f"{info} (processing failed: {e})")

    def import_resources(self, resource_type: ResourceType, result: SyncResult) -> None:
        """Reconcile every remote resource with the local directory."""
        resource_type = ResourceType(resource_type)
        logger.info(f"Importing {resource_type.value} resources")

        template = self._adapter(resource_type)
        # All pages are read before any remote delete
        resources = list(self.client.list_all(template.resource_class, template.scim_endpoint))

        for resource in resources:
            info = f"{resource_type.value}(id={resource.id})"
            try:
                logger.info(f"Reconciling remote resource {resource.id}")
                adapter = self._adapter(resource_type)
                adapter.apply_resource(resource)
                info = adapter.describe()

                mapping = adapter.get_mapping()
                if mapping is not None:
                    adapter.apply_mapping(mapping)
                    if adapter.entity_exists():
                        logger.info(f"Valid mapping found for {info}, skipping")
                        continue
                    logger.info(f"Deleting dangling mapping for {info}")
                    adapter.delete_mapping()
                    # Start over without the stale local id
                    adapter = self._adapter(resource_type)
                    adapter.apply_resource(resource)

                if adapter.try_to_map():
                    if adapter.has_mapping():
                        logger.warning(f"Local resource {adapter.local_id} is already mapped, not linking {info}")
                        result.add_failed(resource_type, f"{info} (processing failed: local resource already mapped)")
                        continue
                    logger.info(f"Matched local resource for {info}")
                    adapter.save_mapping()
                    result.add_mapped(resource_type, adapter.describe())
                    continue

                self._apply_import_action(adapter, resource, result, info)
            except Exception as e:
                logger.error(f"Failed to process resource {info}: {e}", exc_info=True)
                result.add_failed(resource_type, f"{info} (processing failed: {e})")

    def _apply_import_action(self, adapter: ResourceAdapter, resource, result: SyncResult, info: str) -> None:
        resource_type = adapter.resource_type
        action = self.config.sync_import_action

        if action == ImportAction.CREATE_LOCAL:
            logger.info(f"Creating local resource for {info}")
            try:
                adapter.create_entity()
                adapter.save_mapping()
                result.add_added(resource_type, adapter.describe())
            except Exception as e:
                logger.error(f"Failed to create local resource for {info}: {e}")
                result.add_failed(resource_type, f"{info} (create failed: {e})")

        elif action == ImportAction.DELETE_REMOTE:
            logger.info(f"Deleting remote resource for {info}")
            url = self.client.gen_url(adapter.scim_endpoint, resource.id)
            try:
                response = self.retry.call(f"delete-{resource.id}", self.client.delete, url,
                                           adapter.resource_class)
            except Exception as e:
                logger.error(f"Failed to delete remote resource for {info}: {e}")
                result.add_failed(resource_type, f"{info} (delete failed: {e})")
                return
            if response.success:
                result.add_removed(resource_type, info)
            else:
                logger.error(f"Failed to delete remote resource for {info}: status {response.status}")
                result.add_failed(resource_type, f"{info} (delete failed: status {response.status})")

        else:
            logger.debug(f"No import action for {info}")

    @staticmethod
    def _track(result: SyncResult, resource_type: ResourceType, outcome: Outcome, info: str) -> None:
        if outcome == Outcome.CREATED:
            result.add_added(resource_type, info)
        elif outcome == Outcome.UPDATED:
            result.add_updated(resource_type, info)
        elif outcome == Outcome.MAPPED:
            result.add_mapped(resource_type, info)
        elif outcome == Outcome.FAILED:
            result.add_failed(resource_type, info)

    def sync(self, resource_type: ResourceType, result: Optional[SyncResult] = None) -> SyncResult:
        """Run import and/or refresh for one resource type, as configured."""
        resource_type = ResourceType(resource_type)
        if result is None:
            result = SyncResult()

        logger.debug(f"Starting sync for {resource_type.value}")
        if self.config.sync_import:
            self.import_resources(resource_type, result)
        if self.config.sync_refresh:
            self.refresh_resources(resource_type, result)
        logger.debug(f"Sync completed for {resource_type.value}")
        return result

    def sync_all(self) -> SyncResult:
        """Sync users, then groups, for the resource types with propagation enabled."""
        result = SyncResult()
        # Users first so group members can be resolved
        for resource_type in (ResourceType.USER, ResourceType.GROUP):
            if self.config.propagates(resource_type):
                self.sync(resource_type, result)
        logger.info(f"Sync finished: {result.status}")
        return result

    def close(self):
        self.client.close()
