import pytest

from config import ImportAction
from exceptions import MappingLookupError, ScimRequestError, ScimTransportError
from models import SKIP_ATTRIBUTE
from scim_client import ScimResponse
from scim_resources import ResourceType, ScimGroup, ScimMember, ScimUser
from sync_engine import Outcome
from sync_result import SyncResult


@pytest.fixture
def engine(make_engine):
    return make_engine()


def refresh(engine, resource_type):
    result = SyncResult()
    engine.refresh_resources(resource_type, result)
    return result


def import_(engine, resource_type):
    result = SyncResult()
    engine.import_resources(resource_type, result)
    return result


# -- refresh ------------------------------------------------------------------

def test_refresh_creates_unmapped_users(engine, directory, mappings, scim):
    alice = directory.create_user("alice", email="alice@example.com")
    bob = directory.create_user("bob")

    result = refresh(engine, ResourceType.USER)

    assert scim.methods() == ["POST", "POST"]
    assert result.added == 2
    assert {m.local_id for m in mappings.all("User")} == {alice.id, bob.id}
    assert {m.external_id for m in mappings.all("User")} == set(scim.resources["Users"])
    # The server assigns ids
    assert all(call[2].id is None for call in scim.calls)


def test_refresh_replaces_mapped_users(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-alice", user_name="alice"))
    mappings.save(mappings.new_mapping("User", alice.id, "ext-alice"))

    result = refresh(engine, ResourceType.USER)

    assert scim.methods() == ["PUT"]
    assert scim.calls[0][1] == "https://scim.example.com/v2/Users/ext-alice"
    assert result.updated == 1
    assert len(mappings.all("User")) == 1


def test_refresh_twice_is_idempotent(engine, directory, mappings, scim):
    directory.create_user("alice")
    directory.create_user("bob")

    refresh(engine, ResourceType.USER)
    first = {(m.local_id, m.external_id) for m in mappings.all("User")}
    result = refresh(engine, ResourceType.USER)

    assert {(m.local_id, m.external_id) for m in mappings.all("User")} == first
    assert scim.methods() == ["POST", "POST", "PUT", "PUT"]
    assert result.added == 0
    assert result.updated == 2


def test_refresh_skips_entities_marked_skip(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    alice.custom_attributes = {SKIP_ATTRIBUTE: "true"}

    result = refresh(engine, ResourceType.USER)

    assert scim.calls == []
    assert result.status == "No changes"
    assert mappings.all("User") == []


def test_refresh_groups_sends_mapped_members(engine, directory, scim):
    alice = directory.create_user("alice")
    group = directory.create_group("staff")
    directory.join_group(alice, group)

    refresh(engine, ResourceType.USER)
    result = refresh(engine, ResourceType.GROUP)

    [remote_group] = scim.resources["Groups"].values()
    [alice_remote] = scim.resources["Users"].values()
    assert remote_group.display_name == "staff"
    assert [m.value for m in remote_group.members] == [alice_remote.id]
    assert result.added_groups == [f"Group(name=staff, id={group.id})"]


def test_refresh_groups_honours_filter(make_engine, directory, scim):
    parent = directory.create_group("staff")
    child = directory.create_group("cleaning")
    directory.create_group("guests")
    parent.subgroups.append(child.id)

    refresh(make_engine(group_filter="staff"), ResourceType.GROUP)

    assert sorted(g.display_name for g in scim.resources["Groups"].values()) == ["cleaning", "staff"]


def test_refresh_isolates_failures(engine, directory, mappings, scim):
    directory.create_user("alice")
    directory.create_user("bob")
    directory.create_user("carol")
    scim.script("POST", ScimResponse(True, 201, "{}", ScimUser(id="ext-a")),
                ScimTransportError("timeout"), ScimTransportError("timeout"), ScimTransportError("timeout"))

    result = refresh(engine, ResourceType.USER)

    assert result.added == 2
    assert result.failed == 1
    assert result.failed_users[0].startswith("User(username=bob")
    assert "processing failed" in result.failed_users[0]
    assert len(mappings.all("User")) == 2


def test_refresh_records_failed_create(engine, directory, mappings, scim):
    directory.create_user("alice")
    scim.script("POST", ScimResponse(False, 500, "internal error"))

    result = refresh(engine, ResourceType.USER)

    assert result.failed == 1
    assert mappings.all("User") == []


def test_refresh_isolates_duplicate_remote_ids(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    directory.create_user("bob")
    carol = directory.create_user("carol")
    scim.script("POST", ScimResponse(True, 201, "{}", ScimUser(id="dup")),
                ScimResponse(True, 201, "{}", ScimUser(id="dup")),
                ScimResponse(True, 201, "{}", ScimUser(id="c-1")))

    result = refresh(engine, ResourceType.USER)

    assert result.added == 2
    assert result.failed == 1
    assert result.failed_users[0].startswith("User(username=bob")
    assert {(m.local_id, m.external_id) for m in mappings.all("User")} == {(alice.id, "dup"), (carol.id, "c-1")}


# -- create / replace / delete ---------------------------------------------------

def test_create_skips_when_mapping_exists(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    mappings.save(mappings.new_mapping("User", alice.id, "ext-alice"))

    assert engine.create(ResourceType.USER, alice) == Outcome.SKIPPED
    assert scim.calls == []


def test_create_retries_transport_errors(engine, directory, mappings, scim, sleeps):
    alice = directory.create_user("alice")
    scim.script("POST", ScimTransportError("refused"))

    assert engine.create(ResourceType.USER, alice) == Outcome.CREATED
    assert scim.methods() == ["POST", "POST"]
    assert len(sleeps) == 1
    assert engine.retry.attempts(f"create-{alice.id}") == 2
    assert mappings.find_by_local_id("User", alice.id).external_id == "ext-1"


def test_create_conflict_maps_existing_remote_user(make_engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-alice", user_name="alice"))
    scim.script("POST", ScimResponse(False, 409, "uniqueness"))
    engine = make_engine(map_existing_users=True)

    assert engine.create(ResourceType.USER, alice) == Outcome.MAPPED
    assert scim.calls[-1] == ("GET", "https://scim.example.com/v2/Users", 'userName eq "alice"')
    assert mappings.find_by_local_id("User", alice.id).external_id == "ext-alice"


def test_create_conflict_maps_user_name_with_quotes(make_engine, directory, mappings, scim):
    user = directory.create_user('o"neil')
    scim.add_remote(ScimUser(id="ext-oneil", user_name='o"neil'))
    scim.script("POST", ScimResponse(False, 409, "uniqueness"))

    assert make_engine(map_existing_users=True).create(ResourceType.USER, user) == Outcome.MAPPED
    assert scim.calls[-1][2] == 'userName eq "o\\"neil"'
    assert mappings.find_by_local_id("User", user.id).external_id == "ext-oneil"


def test_create_lookup_error_is_fail_open_unless_strict(make_engine, directory, mappings, scim, monkeypatch):
    alice = directory.create_user("alice")

    def broken(*args, **kwargs):
        raise MappingLookupError("database is locked")

    monkeypatch.setattr(mappings, "find_by_local_id", broken)

    with pytest.raises(MappingLookupError):
        make_engine(strict_lookups=True).create(ResourceType.USER, alice)
    assert scim.calls == []

    assert make_engine().create(ResourceType.USER, alice) == Outcome.CREATED
    assert scim.methods() == ["POST"]


def test_create_conflict_fails_without_map_existing(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-alice", user_name="alice"))
    scim.script("POST", ScimResponse(False, 409, "uniqueness"))

    assert engine.create(ResourceType.USER, alice) == Outcome.FAILED
    assert scim.methods() == ["POST"]
    assert mappings.all("User") == []


def test_replace_without_mapping_is_skipped(engine, directory, scim):
    alice = directory.create_user("alice")

    assert engine.replace(ResourceType.USER, alice) == Outcome.SKIPPED
    assert scim.calls == []


def test_replace_uses_patch_when_enabled(make_engine, directory, mappings, scim):
    group = directory.create_group("staff")
    scim.add_remote(ScimGroup(id="ext-g", display_name="staff", members=[ScimMember("ext-x")]))
    mappings.save(mappings.new_mapping("Group", group.id, "ext-g"))

    outcome = make_engine(group_patch_op=True).replace(ResourceType.GROUP, group)

    assert outcome == Outcome.UPDATED
    assert scim.methods() == ["PATCH"]
    assert scim.resources["Groups"]["ext-g"].members == []


def test_replace_group_falls_back_to_patch_on_405(engine, directory, mappings, scim):
    group = directory.create_group("staff")
    scim.add_remote(ScimGroup(id="ext-g", display_name="staff"))
    mappings.save(mappings.new_mapping("Group", group.id, "ext-g"))
    scim.script("PUT", ScimResponse(False, 405, "method not allowed"))

    assert engine.replace(ResourceType.GROUP, group) == Outcome.UPDATED
    assert scim.methods() == ["PUT", "PATCH"]


def test_replace_user_does_not_patch_on_405(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    mappings.save(mappings.new_mapping("User", alice.id, "ext-alice"))
    scim.script("PUT", ScimResponse(False, 405, "method not allowed"))

    assert engine.replace(ResourceType.USER, alice) == Outcome.FAILED
    assert scim.methods() == ["PUT"]


@pytest.mark.parametrize("status", [404, 400])
def test_replace_recreates_missing_resource_and_overwrites_mapping(engine, directory, mappings, scim, status):
    alice = directory.create_user("alice")
    mappings.save(mappings.new_mapping("User", alice.id, "ext-gone"))
    scim.script("PUT", ScimResponse(False, status, "not found"))

    assert engine.replace(ResourceType.USER, alice) == Outcome.UPDATED

    assert scim.methods() == ["PUT", "POST"]
    [new_id] = scim.resources["Users"]
    [mapping] = mappings.all("User")
    assert mapping.local_id == alice.id
    assert mapping.external_id == new_id
    assert new_id != "ext-gone"


def test_replace_recreate_failure_keeps_mapping(engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    mappings.save(mappings.new_mapping("User", alice.id, "ext-gone"))
    scim.script("POST", ScimResponse(False, 500, "boom"))

    assert engine.replace(ResourceType.USER, alice) == Outcome.FAILED
    assert mappings.find_by_local_id("User", alice.id).external_id == "ext-gone"


def test_delete_removes_remote_and_mapping(engine, directory, mappings, scim):
    scim.add_remote(ScimUser(id="ext-alice", user_name="alice"))
    mappings.save(mappings.new_mapping("User", "u-gone", "ext-alice"))

    assert engine.delete(ResourceType.USER, "u-gone")

    assert scim.calls == [("DELETE", "https://scim.example.com/v2/Users/ext-alice")]
    assert scim.resources["Users"] == {}
    assert mappings.all("User") == []


def test_delete_drops_mapping_even_on_error_status(engine, mappings, scim):
    mappings.save(mappings.new_mapping("User", "u-gone", "ext-alice"))

    assert not engine.delete(ResourceType.USER, "u-gone")
    assert mappings.all("User") == []


def test_delete_keeps_mapping_on_transport_failure(make_engine, mappings, scim, retry_policy):
    mappings.save(mappings.new_mapping("User", "u-gone", "ext-alice"))
    scim.script("DELETE", *[ScimTransportError("refused")] * retry_policy.max_attempts)

    with pytest.raises(ScimTransportError):
        make_engine().delete(ResourceType.USER, "u-gone")
    assert len(mappings.all("User")) == 1


def test_delete_without_mapping(engine, scim):
    assert not engine.delete(ResourceType.USER, "unknown")
    assert scim.calls == []


# -- import ------------------------------------------------------------------------

def test_import_creates_local_user(make_engine, directory, mappings, scim):
    scim.add_remote(ScimUser(id="ext-1", user_name="carol", email="carol@example.com"))

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    [carol] = directory.users()
    assert carol.username == "carol"
    assert mappings.find_by_external_id("User", "ext-1").local_id == carol.id
    assert result.added_users == ["User(username=carol, email=carol@example.com)"]
    assert result.added == 1


def test_import_maps_existing_local_user(make_engine, directory, mappings, scim):
    alice = directory.create_user("alice", email="alice@example.com")
    scim.add_remote(ScimUser(id="ext-1", user_name="a.liddell", email="alice@example.com"))

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    assert len(directory.users()) == 1
    assert mappings.find_by_external_id("User", "ext-1").local_id == alice.id
    assert result.mapped == 1
    assert result.added == 0


def test_import_maps_group_by_display_name(make_engine, directory, mappings, scim):
    group = directory.create_group("staff")
    scim.add_remote(ScimGroup(id="ext-g", display_name="staff"))

    result = import_(make_engine(sync_import=True), ResourceType.GROUP)

    assert mappings.find_by_external_id("Group", "ext-g").local_id == group.id
    assert result.mapped_groups == [f"Group(name=staff, id={group.id})"]


def test_import_skips_valid_mapping(make_engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-1", user_name="alice"))
    mappings.save(mappings.new_mapping("User", alice.id, "ext-1"))

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    assert result.status == "No changes"
    assert len(directory.users()) == 1


def test_import_heals_dangling_mapping(make_engine, directory, mappings, scim):
    scim.add_remote(ScimUser(id="ext-1", user_name="carol"))
    mappings.save(mappings.new_mapping("User", "deleted-user", "ext-1"))

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    [carol] = directory.users()
    [mapping] = mappings.all("User")
    assert mapping.local_id == carol.id
    assert mapping.external_id == "ext-1"
    assert result.added == 1


def test_import_heals_dangling_mapping_then_matches(make_engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-1", user_name="alice"))
    mappings.save(mappings.new_mapping("User", "deleted-user", "ext-1"))

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    assert mappings.find_by_external_id("User", "ext-1").local_id == alice.id
    assert result.mapped == 1


def test_import_delete_remote(make_engine, directory, mappings, scim):
    scim.add_remote(ScimUser(id="ext-1", user_name="mallory"))

    result = import_(make_engine(sync_import=True, sync_import_action=ImportAction.DELETE_REMOTE),
                     ResourceType.USER)

    assert scim.resources["Users"] == {}
    assert result.removed_users == ["User(username=mallory, email=None)"]
    assert directory.users() == []
    assert mappings.all("User") == []


def test_import_delete_remote_failure(make_engine, scim):
    scim.add_remote(ScimUser(id="ext-1", user_name="mallory"))
    scim.script("DELETE", ScimResponse(False, 403, "forbidden"))

    result = import_(make_engine(sync_import=True, sync_import_action=ImportAction.DELETE_REMOTE),
                     ResourceType.USER)

    assert result.removed == 0
    assert result.failed_users == ["User(username=mallory, email=None) (delete failed: status 403)"]


def test_import_nothing_action(make_engine, directory, scim):
    scim.add_remote(ScimUser(id="ext-1", user_name="mallory"))

    result = import_(make_engine(sync_import=True, sync_import_action=ImportAction.NOTHING),
                     ResourceType.USER)

    assert result.status == "No changes"
    assert directory.users() == []
    assert "DELETE" not in scim.methods()


def test_import_create_failure_is_recorded(make_engine, directory, scim, monkeypatch):
    scim.add_remote(ScimUser(id="ext-1", user_name="carol"))

    def broken(*args, **kwargs):
        raise RuntimeError("directory is read-only")

    monkeypatch.setattr(directory, "create_user", broken)

    result = import_(make_engine(sync_import=True), ResourceType.USER)

    assert result.failed_users == ["User(username=carol, email=None) (create failed: directory is read-only)"]


def test_import_isolates_failures(make_engine, directory, mappings, scim, monkeypatch):
    for user_id, name in (("ext-1", "anna"), ("ext-2", "boris"), ("ext-3", "clara")):
        scim.add_remote(ScimUser(id=user_id, user_name=name))
    engine = make_engine(sync_import=True)

    original = directory.find_user_by_username

    def flaky(username):
        if username == "boris":
            raise RuntimeError("lookup exploded")
        return original(username)

    monkeypatch.setattr(directory, "find_user_by_username", flaky)

    result = import_(engine, ResourceType.USER)

    assert sorted(u.username for u in directory.users()) == ["anna", "clara"]
    assert result.added == 2
    assert result.failed == 1
    assert result.failed_users == ["User(username=boris, email=None) (processing failed: lookup exploded)"]


def test_import_list_failure_aborts(make_engine, scim):
    scim.script("LIST", ScimRequestError("Listing Users failed with status 500", status=500))

    with pytest.raises(ScimRequestError):
        import_(make_engine(sync_import=True), ResourceType.USER)


def test_import_group_members_after_users(make_engine, directory, mappings, scim):
    scim.add_remote(ScimUser(id="ext-u", user_name="carol"))
    scim.add_remote(ScimGroup(id="ext-g", display_name="staff", members=[ScimMember("ext-u")]))
    engine = make_engine(sync_import=True)

    result = engine.sync_all()

    [carol] = directory.users()
    [staff] = directory.groups()
    assert staff.members == [carol.id]
    assert result.added_users and result.added_groups


# -- sync ------------------------------------------------------------------------

def test_sync_all_honours_propagation_flags(make_engine, directory, scim):
    directory.create_user("alice")
    directory.create_group("staff")

    result = make_engine(propagation_group=False).sync_all()

    assert result.added_users
    assert result.added_groups == []
    assert scim.resources["Groups"] == {}


def test_sync_runs_import_before_refresh(make_engine, directory, mappings, scim):
    alice = directory.create_user("alice")
    scim.add_remote(ScimUser(id="ext-alice", user_name="alice"))

    result = make_engine(sync_import=True, sync_refresh=True).sync(ResourceType.USER)

    # Import linked alice, so refresh updates instead of creating a duplicate
    assert scim.methods() == ["LIST", "PUT"]
    assert mappings.find_by_local_id("User", alice.id).external_id == "ext-alice"
    assert result.mapped == 1


def test_close_closes_client(engine, scim):
    engine.close()

    assert scim.closed
