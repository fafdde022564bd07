import os

import pytest

from soarpkg.installed import (
    InstalledPackages,
    NotInstalledError,
    format_bytes,
    parse_size,
)
from soarpkg.package import Package, ResolvedPackage, SoarPaths

CHECKSUM = "abcdef0123456789"


def make_resolved(name="jq", variant=None, collection="bin", repo="main", size="1 KiB"):
    return ResolvedPackage(
        repo_name=repo,
        collection=collection,
        package=Package(
            name=name, bin_name=name, version="1.0", size=size, variant=variant
        ),
    )


class FakeStorage:
    def __init__(self, packages):
        self.packages = packages

    def get_packages(self, query):
        found = [p for p in self.packages if p.package.name == query.name]
        return found or None


def test_load_empty_creates_directory(tmp_path):
    track = tmp_path / "installs"
    installed = InstalledPackages.load(track)
    assert installed.packages == []
    assert track.is_dir()


def test_register_and_find(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    pkg = make_resolved()
    installed.register_package(pkg, CHECKSUM)
    assert installed.is_installed(pkg)
    found = installed.find_package(pkg)
    assert found.checksum == CHECKSUM
    assert found.size == parse_size(pkg.package.size)


def test_find_requires_same_collection(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    installed.register_package(make_resolved(), CHECKSUM)
    other = make_resolved(collection="other")
    assert installed.find_package(other) is None
    assert installed.is_installed(other)


def test_register_replaces_existing(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    pkg = make_resolved()
    installed.register_package(pkg, CHECKSUM)
    installed.register_package(pkg, "f" * 16)
    assert len(installed.packages) == 1
    assert installed.packages[0].checksum == "f" * 16


def test_save_load_round_trip(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    installed.register_package(make_resolved(variant="v"), CHECKSUM)
    installed.register_package(make_resolved(name="yq"), CHECKSUM)
    reloaded = InstalledPackages.load(tmp_path)
    assert reloaded.packages == installed.packages


def test_unregister(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    installed.register_package(make_resolved(), CHECKSUM)
    installed.register_package(make_resolved(name="yq"), CHECKSUM)
    installed.unregister_package(installed.packages[0])
    assert [p.name for p in installed.packages] == ["yq"]
    assert [p.name for p in InstalledPackages.load(tmp_path).packages] == ["yq"]


def test_install_dir_matches_package(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    pkg = make_resolved(variant="v")
    installed.register_package(pkg, CHECKSUM)
    record = installed.packages[0]
    assert record.get_install_path(tmp_path) == pkg.package.get_install_path(
        tmp_path, CHECKSUM
    )
    assert record.full_name("/") == pkg.package.full_name("/")


def test_summary_all(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    installed.register_package(make_resolved(), CHECKSUM)
    installed.register_package(make_resolved(name="yq"), CHECKSUM)
    lines = installed.summary(None, FakeStorage([]))
    assert lines[0].startswith("- [bin] jq:jq-1.0 (")
    assert lines[-1].startswith("   Total: 2 (")


def test_summary_filtered(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    jq = make_resolved()
    installed.register_package(jq, CHECKSUM)
    installed.register_package(make_resolved(name="yq"), CHECKSUM)
    lines = installed.summary(["jq"], FakeStorage([jq]))
    assert sum(line.startswith("- ") for line in lines) == 1


def test_summary_empty_raises(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    with pytest.raises(LookupError):
        installed.summary(None, FakeStorage([]))


def test_use_package_not_installed(tmp_path):
    installed = InstalledPackages.load(tmp_path)
    with pytest.raises(NotInstalledError):
        installed.use_package(make_resolved(), SoarPaths(root=tmp_path))


def test_use_package_creates_link(tmp_path):
    paths = SoarPaths(root=tmp_path)
    paths.bin_path.mkdir(parents=True)
    installed = InstalledPackages.load(paths.install_track_path)
    pkg = make_resolved()
    installed.register_package(pkg, CHECKSUM)
    link = installed.use_package(pkg, paths)
    assert os.readlink(link) == str(pkg.package.get_install_path(paths.packages_path, CHECKSUM))


def test_use_package_refuses_unmanaged(tmp_path):
    paths = SoarPaths(root=tmp_path)
    paths.bin_path.mkdir(parents=True)
    installed = InstalledPackages.load(paths.install_track_path)
    pkg = make_resolved()
    installed.register_package(pkg, CHECKSUM)
    (paths.bin_path / pkg.package.bin_name).write_text("foreign")
    with pytest.raises(FileExistsError):
        installed.use_package(pkg, paths)


@pytest.mark.parametrize("size", [0, 100, 1024, 1024 * 1024, 3 * 1024**3])
def test_format_parse_round_trip(size):
    assert parse_size(format_bytes(size)) == size


def test_format_small_bytes():
    assert format_bytes(512) == "512 B"


def test_parse_size_invalid():
    assert parse_size("lots") is None
    assert parse_size("12 zz") is None