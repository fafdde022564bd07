from types import SimpleNamespace

import pytest
import responses

from soarpkg.installed import InstalledPackages
from soarpkg.package import Package, ResolvedPackage, SoarPaths, parse_package_query
from soarpkg.update import Updater

URL = "https://example.com/x86_64/tool"
CHECKSUM = "deadbeefcafe0001"
OLD = "0123456789abcdef"


class FakeStorage:
    def __init__(self, packages):
        self.packages = packages

    def get_packages(self, query):
        found = [
            p
            for p in self.packages
            if p.package.name == query.name
            and (query.collection is None or p.collection == query.collection)
        ]
        return found or None

    def resolve_package(self, name, yes):
        found = self.get_packages(parse_package_query(name))
        if not found:
            raise LookupError(f"Package {name} not found")
        return found[0]


def make_resolved(bsum=CHECKSUM):
    return ResolvedPackage(
        repo_name="main",
        collection="bin",
        package=Package(
            name="tool", bin_name="tool", version="2.0", download_url=URL, bsum=bsum
        ),
    )


@pytest.fixture
def registry(tmp_path):
    paths = SoarPaths(root=tmp_path / "soar", data_path=tmp_path / "data")
    return SimpleNamespace(
        paths=paths,
        storage=FakeStorage([make_resolved()]),
        installed_packages=InstalledPackages.load(paths.install_track_path),
    )


def test_no_updates_when_checksums_match(registry):
    registry.installed_packages.register_package(make_resolved(), CHECKSUM)
    with responses.RequestsMock():
        assert Updater().execute(registry) == 0


def test_outdated_package_is_reinstalled(registry):
    registry.installed_packages.register_package(make_resolved(), OLD)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=b"new-binary")
        count = Updater(checksum_func=lambda path: CHECKSUM).execute(registry)
    assert count == 1
    records = registry.installed_packages.packages
    assert [r.checksum for r in records] == [CHECKSUM]
    assert records[0].version == "2.0"


def test_named_update(registry):
    registry.installed_packages.register_package(make_resolved(), OLD)
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, URL, body=b"new-binary")
        count = Updater(["tool"], checksum_func=lambda path: CHECKSUM).execute(registry)
    assert count == 1


def test_named_package_not_installed(registry):
    with responses.RequestsMock():
        assert Updater(["tool"]).execute(registry) == 0
    assert registry.installed_packages.packages == []


def test_unknown_named_package_raises(registry):
    with pytest.raises(LookupError):
        Updater(["missing"]).execute(registry)


def test_installed_package_missing_from_repository_is_skipped(registry):
    other = ResolvedPackage(
        repo_name="main", collection="bin", package=Package(name="gone", bin_name="gone")
    )
    registry.installed_packages.register_package(other, OLD)
    with responses.RequestsMock():
        assert Updater().execute(registry) == 0