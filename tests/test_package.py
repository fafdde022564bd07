from pathlib import Path

import pytest

from soarpkg.package import (
    Package,
    PackageQuery,
    ResolvedPackage,
    SoarPaths,
    parse_package_query,
)


def test_full_name_without_variant():
    pkg = Package(name="curl")
    assert pkg.full_name("/") == "curl"


def test_full_name_with_variant():
    pkg = Package(name="curl", variant="static")
    assert pkg.full_name("/") == "static/curl"
    assert pkg.full_name("-") == "static-curl"


def test_parse_plain_name():
    assert parse_package_query("curl") == PackageQuery(name="curl")


def test_parse_full_query_lowercases_collection():
    q = parse_package_query("static/curl#BinCache")
    assert q.name == "curl"
    assert q.variant == "static"
    assert q.collection == "bincache"


def test_parse_empty_collection_is_none():
    q = parse_package_query("curl#")
    assert q.collection is None
    assert q.name == "curl"


def test_parse_uses_last_hash_and_first_slash():
    q = parse_package_query("a/b/c#x#y")
    assert q.collection == "y"
    assert q.variant == "a"
    assert q.name == "b/c#x"


def test_install_dir_and_path(tmp_path):
    pkg = Package(name="curl", bin_name="curl-bin", variant="v")
    checksum = "0123456789abcdef"
    expected_dir = tmp_path / f"{checksum[:8]}-{pkg.full_name('-')}"
    assert pkg.get_install_dir(tmp_path, checksum) == expected_dir
    assert pkg.get_install_path(tmp_path, checksum) == expected_dir / "curl-bin"


def test_short_checksum_rejected(tmp_path):
    with pytest.raises(ValueError):
        Package(name="x").get_install_dir(tmp_path, "abc")


def test_dict_round_trip():
    pkg = Package(name="jq", bin_name="jq", version="1.7", variant="x", bin_id="id")
    assert Package.from_dict(pkg.to_dict()) == pkg


def test_from_dict_ignores_unknown_keys():
    pkg = Package.from_dict({"name": "jq", "unknown": 1})
    assert pkg.name == "jq"
    assert pkg.variant is None


def test_resolved_package_defaults():
    resolved = ResolvedPackage()
    assert resolved.package == Package()
    assert resolved.repo_name == ""


def test_paths_are_under_root(tmp_path):
    paths = SoarPaths(root=tmp_path, data_path=tmp_path / "data")
    all_paths = [
        paths.bin_path,
        paths.packages_path,
        paths.install_track_path,
        paths.registry_path,
        paths.cache_path,
    ]
    assert all(Path(p).parent == tmp_path for p in all_paths)
    assert len(set(all_paths)) == len(all_paths)