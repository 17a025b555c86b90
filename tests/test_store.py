from unittest.mock import patch

import pytest

from furnace.errors import Conflict, NotFound, StoreUnavailable
from furnace.recipe import Recipe, RecipeStore


@pytest.fixture
def store(tmp_path):
    store = RecipeStore(tmp_path / "recipes")
    store.load()
    return store


def test_put_get_list(store, alpha, beta):
    store.put(beta)
    store.put(alpha)

    assert store.get("alpha") == alpha
    assert [r.name for r in store.list()] == ["alpha", "beta"]


def test_get_unknown_raises_not_found(store):
    with pytest.raises(NotFound):
        store.get("missing")


def test_duplicate_name_is_conflict(store, alpha):
    store.put(alpha)
    with pytest.raises(Conflict):
        store.put(alpha)


def test_duplicate_hostname_is_conflict_and_store_unchanged(store, alpha):
    store.put(alpha)
    other = Recipe(
        name="other",
        project_path="/srv/other",
        runtime_version="8.2",
        serving_engine="nginx",
        site_hostname="alpha.test",
    )

    with pytest.raises(Conflict):
        store.put(other)

    assert [r.name for r in store.list()] == ["alpha"]
    assert not (store.recipe_directory / "other.yml").exists()


def test_replace_updates_existing_recipe(store, alpha):
    store.put(alpha)
    alpha.runtime_version = "8.3"
    store.put(alpha, replace=True)
    assert store.get("alpha").runtime_version == "8.3"


def test_replace_refused_while_in_use(store, alpha):
    store.put(alpha)
    store.in_use = lambda name: name == "alpha"
    with pytest.raises(Conflict):
        store.put(alpha, replace=True)


def test_delete(store, alpha):
    store.put(alpha)
    store.delete("alpha")

    assert store.list() == []
    assert not (store.recipe_directory / "alpha.yml").exists()
    with pytest.raises(NotFound):
        store.delete("alpha")


def test_delete_refused_while_in_use(store, alpha):
    store.put(alpha)
    store.in_use = lambda name: True
    with pytest.raises(Conflict):
        store.delete("alpha")
    assert store.get("alpha") == alpha


@pytest.mark.parametrize("state", ["starting", "health_checking", "running"])
def test_recorded_live_state_blocks_delete_from_another_store(tmp_path, store, alpha, state):
    store.put(alpha)
    store.annotate("alpha", state)

    other = RecipeStore(tmp_path / "recipes")
    with pytest.raises(Conflict) as excinfo:
        other.delete("alpha")
    assert excinfo.value.stage == "delete"
    with pytest.raises(Conflict):
        other.put(alpha, replace=True)
    assert (other.recipe_directory / "alpha.yml").exists()


@pytest.mark.parametrize("state", ["stopped", "failed", None])
def test_recorded_idle_state_allows_delete(tmp_path, store, alpha, state):
    store.put(alpha)
    if state:
        store.annotate("alpha", state)

    other = RecipeStore(tmp_path / "recipes")
    other.delete("alpha")
    assert other.list() == []


def test_in_use_callback_overrides_recorded_state(store, alpha):
    store.put(alpha)
    store.annotate("alpha", "running")
    store.in_use = lambda name: False

    store.delete("alpha")
    assert store.list() == []


def test_recipes_survive_reload(tmp_path, store, alpha, beta):
    store.put(alpha)
    store.put(beta)
    store.annotate("alpha", "running")

    reopened = RecipeStore(tmp_path / "recipes")
    assert [r.name for r in reopened.list()] == ["alpha", "beta"]
    assert reopened.get("alpha").last_known_state == "running"


def test_no_temp_files_left_behind(store, alpha):
    store.put(alpha)
    store.annotate("alpha", "stopped")
    leftovers = [p.name for p in store.recipe_directory.iterdir() if p.suffix == ".tmp"]
    assert leftovers == []


def test_corrupt_file_makes_store_unavailable_but_keeps_cache(store, alpha, beta):
    store.put(alpha)
    (store.recipe_directory / "broken.yml").write_text("name: [unclosed\n")

    with pytest.raises(StoreUnavailable):
        store.reload()

    assert not store.available
    assert store.get("alpha") == alpha
    with pytest.raises(StoreUnavailable):
        store.put(beta)
    with pytest.raises(StoreUnavailable):
        store.delete("alpha")
    with pytest.raises(StoreUnavailable):
        store.annotate("alpha", "running")

    (store.recipe_directory / "broken.yml").unlink()
    store.reload()
    assert store.available
    store.put(beta)


def test_duplicate_hostnames_on_disk_make_store_unavailable(tmp_path, alpha):
    directory = tmp_path / "recipes"
    directory.mkdir()
    (directory / "alpha.yml").write_text(alpha.to_yaml())
    clone = Recipe(**{**alpha.to_dict(), "name": "clone"})
    (directory / "clone.yml").write_text(clone.to_yaml())

    store = RecipeStore(directory)
    with pytest.raises(StoreUnavailable):
        store.load()


def test_unreadable_directory_serves_empty_cache(tmp_path, alpha):
    blocker = tmp_path / "recipes"
    blocker.write_text("not a directory")

    store = RecipeStore(blocker)
    assert store.list() == []
    assert not store.available
    with pytest.raises(StoreUnavailable):
        store.put(alpha)


def test_failed_write_leaves_previous_file_intact(store, alpha):
    store.put(alpha)
    before = (store.recipe_directory / "alpha.yml").read_text()

    with patch("furnace.recipe.store.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(StoreUnavailable):
            store.annotate("alpha", "running")

    assert (store.recipe_directory / "alpha.yml").read_text() == before
    assert store.get("alpha").last_known_state is None
    assert not store.available


def test_find_by_path(store, alpha):
    store.put(alpha)
    assert store.find_by_path("/srv/alpha") == alpha
    assert store.find_by_path("/srv/nothing") is None
