"""Cache save/load behaviour and the ``LOAD_FAILED`` sentinel."""

from __future__ import annotations

import pickle

import pandas as pd
import pytest

from LabTaxa.profiles import ProfileCollection
from LabTaxa.storage import (
    LOAD_FAILED,
    LoadFailed,
    cache_labtaxa,
    load,
    load_labmorph,
    load_labtaxa,
    save,
)


def _collection() -> ProfileCollection:
    site = pd.DataFrame({"pedon_key": [1, 2], "upedonid": ["a", "b"]})
    horizons = pd.DataFrame(
        {"pedon_key": [1, 1, 2], "hzn_top": [0, 10, 0], "hzn_bot": [10, 30, 25]}
    )
    return ProfileCollection(site, horizons, "pedon_key", ("hzn_top", "hzn_bot"), source="test")


def test_save_then_load_returns_equivalent_collection(tmp_path):
    """A saved collection loads back with identical tables."""

    original = _collection()
    path = save(original, tmp_path / "nested", "spc.pkl")

    assert path == tmp_path / "nested" / "spc.pkl"
    restored = load(tmp_path / "nested", "spc.pkl")
    assert isinstance(restored, ProfileCollection)
    pd.testing.assert_frame_equal(restored.site, original.site)
    pd.testing.assert_frame_equal(restored.horizons, original.horizons)
    assert restored.depth_names == ("hzn_top", "hzn_bot")


def test_load_missing_file_raises_unless_silent(tmp_path):
    """Missing caches raise by default and yield ``LOAD_FAILED`` when silent."""

    with pytest.raises(FileNotFoundError):
        load(tmp_path, "absent.pkl")
    assert load(tmp_path, "absent.pkl", silent=True) is LOAD_FAILED


def test_load_corrupt_file_is_reported_as_failure(tmp_path):
    """A file that is not a pickle is an error, or ``LOAD_FAILED`` when silent."""

    (tmp_path / "broken.pkl").write_bytes(b"definitely not a pickle")

    with pytest.raises(Exception):
        load(tmp_path, "broken.pkl")
    assert load(tmp_path, "broken.pkl", silent=True) is LOAD_FAILED


def test_load_failed_is_a_falsy_singleton():
    assert LoadFailed() is LOAD_FAILED
    assert not LOAD_FAILED
    assert repr(LOAD_FAILED) == "LOAD_FAILED"
    assert pickle.loads(pickle.dumps(LOAD_FAILED)) is LOAD_FAILED


def test_save_rejects_unpicklable_objects(tmp_path):
    """Serialisation failures surface as ``OSError``."""

    with pytest.raises(OSError):
        save(lambda: None, tmp_path, "lambda.pkl")


def test_convenience_wrappers_use_default_names(tmp_path):
    """``cache_labtaxa``/``load_labtaxa``/``load_labmorph`` share the cache naming scheme."""

    collection = _collection()
    path = cache_labtaxa(collection, destdir=tmp_path)
    assert path.name == "cached-LDM-SPC.pkl"
    assert len(load_labtaxa(destdir=tmp_path)) == 2

    save(collection.subset([1]), tmp_path, "cached-morph-SPC.pkl")
    assert len(load_labmorph(destdir=tmp_path)) == 1
    assert load_labmorph("other.pkl", destdir=tmp_path, silent=True) is LOAD_FAILED


def test_failed_save_keeps_the_previous_cache(tmp_path):
    """An object that cannot be pickled leaves the existing file untouched."""

    save(_collection(), tmp_path, "spc.pkl")

    with pytest.raises(OSError, match="Failed to serialise"):
        save({"callback": lambda: None}, tmp_path, "spc.pkl")

    assert len(load(tmp_path, "spc.pkl")) == 2
    assert sorted(path.name for path in tmp_path.iterdir()) == ["spc.pkl"]
