"""
Shared fixtures: in-memory directory, sqlite mapping store and a fake SCIM server
"""

import dataclasses
import itertools
import re
from collections import defaultdict
from typing import Dict, List

import pytest
from sqlalchemy.orm import Session

from config import SyncConfig
from local_directory import LocalDirectory
from mapping_store import Base, MappingStore, create_mapping_engine
from retry import RetryPolicy
from scim_client import ScimResponse
from scim_resources import PatchOp, ScimListResponse, ScimMember
from sync_engine import SyncEngine


BASE_URL = "https://scim.example.com/v2"

FILTER_RE = re.compile(r'^(\w+) eq "((?:[^"\\]|\\.)*)"$')
FILTER_ATTRIBUTES = {"userName": "user_name", "displayName": "display_name"}


class FakeScimClient:
    """
    In-memory SCIM server with the ScimClient interface.

    Every request is recorded in calls; script() queues responses (or
    exceptions to raise) that are returned before the default behaviour.
    """

    def __init__(self, base_url: str = BASE_URL):
        self.base_url = base_url
        self.calls: List[tuple] = []
        self.resources: Dict[str, dict] = {"Users": {}, "Groups": {}}
        self.scripted = defaultdict(list)
        self.closed = False
        self._ids = itertools.count(1)

    def script(self, method: str, *outcomes):
        self.scripted[method].extend(outcomes)

    def methods(self) -> List[str]:
        return [call[0] for call in self.calls]

    def _scripted(self, method: str):
        if not self.scripted[method]:
            return None
        outcome = self.scripted[method].pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def _split(self, url: str):
        endpoint, _, resource_id = url[len(self.base_url) + 1:].partition("/")
        return endpoint, resource_id or None

    def add_remote(self, resource):
        """Seed the server with a resource; an id is assigned when it has none."""
        if resource.id is None:
            resource.id = f"ext-{next(self._ids)}"
        self.resources[resource.resource_type.endpoint][resource.id] = resource
        return resource

    def gen_url(self, endpoint, resource_id=None):
        if resource_id is None:
            return f"{self.base_url}/{endpoint}"
        return f"{self.base_url}/{endpoint}/{resource_id}"

    def create(self, resource_class, path, resource):
        self.calls.append(("POST", path, resource))
        scripted = self._scripted("POST")
        if scripted is not None:
            return scripted
        stored = resource_class.from_payload(resource.to_payload())
        stored.id = f"ext-{next(self._ids)}"
        self.resources[path.strip("/")][stored.id] = stored
        return ScimResponse(success=True, status=201, body="{}",
                            resource=resource_class.from_payload(stored.to_payload()))

    def update(self, url, resource_class, resource):
        self.calls.append(("PUT", url, resource))
        scripted = self._scripted("PUT")
        if scripted is not None:
            return scripted
        endpoint, resource_id = self._split(url)
        if resource_id not in self.resources[endpoint]:
            return ScimResponse(success=False, status=404, body="Resource not found")
        stored = resource_class.from_payload(resource.to_payload())
        stored.id = resource_id
        self.resources[endpoint][resource_id] = stored
        return ScimResponse(success=True, status=200, body="{}", resource=stored)

    def patch(self, url, resource_class, operations):
        self.calls.append(("PATCH", url, operations))
        scripted = self._scripted("PATCH")
        if scripted is not None:
            return scripted
        endpoint, resource_id = self._split(url)
        stored = self.resources[endpoint].get(resource_id)
        if stored is None:
            return ScimResponse(success=False, status=404, body="Resource not found")
        for operation in operations:
            if operation.path != "members":
                continue
            if operation.op == PatchOp.REMOVE:
                stored.members = []
            else:
                stored.members = [ScimMember(value=v["value"]) for v in operation.value]
        return ScimResponse(success=True, status=200, body="{}", resource=stored)

    def delete(self, url, resource_class=None):
        self.calls.append(("DELETE", url))
        scripted = self._scripted("DELETE")
        if scripted is not None:
            return scripted
        endpoint, resource_id = self._split(url)
        if self.resources[endpoint].pop(resource_id, None) is None:
            return ScimResponse(success=False, status=404, body="Resource not found")
        return ScimResponse(success=True, status=204)

    def list(self, url, resource_class, start_index=1, count=None, filter=None):
        self.calls.append(("GET", url, filter))
        scripted = self._scripted("GET")
        if scripted is not None:
            return scripted
        endpoint, _ = self._split(url)
        resources = list(self.resources[endpoint].values())
        if filter:
            attribute, value = FILTER_RE.match(filter).groups()
            value = re.sub(r"\\(.)", r"\1", value)
            resources = [r for r in resources if getattr(r, FILTER_ATTRIBUTES[attribute]) == value]
        page = ScimListResponse(total_results=len(resources), start_index=1,
                                items_per_page=len(resources), resources=resources)
        return ScimResponse(success=True, status=200, body="{}", resource=page)

    def list_all(self, resource_class, endpoint):
        self.calls.append(("LIST", endpoint))
        self._scripted("LIST")
        yield from list(self.resources[endpoint].values())

    def close(self):
        self.closed = True


@pytest.fixture
def session():
    engine = create_mapping_engine("sqlite://")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        yield session
    engine.dispose()


@pytest.fixture
def mappings(session):
    return MappingStore(session, tenant_id="default", connector_id="scim")


@pytest.fixture
def directory():
    return LocalDirectory()


@pytest.fixture
def config():
    return SyncConfig(endpoint=BASE_URL, sync_refresh=True)


@pytest.fixture
def scim():
    return FakeScimClient()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def retry_policy(sleeps):
    return RetryPolicy(max_attempts=3, sleep=sleeps.append)


@pytest.fixture
def make_engine(config, directory, mappings, scim, retry_policy):
    """Build a SyncEngine, optionally overriding config fields."""
    def _make(**overrides):
        return SyncEngine(dataclasses.replace(config, **overrides), directory, mappings, scim, retry_policy)
    return _make
