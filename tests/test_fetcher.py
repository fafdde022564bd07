import json

import msgpack
import pytest
import requests
import responses

from soarpkg.fetcher import MetadataFetcher, Repository, group_packages

REPO_URL = "https://example.com/repo"
SOURCE_URL = "https://example.com/bin"

PACKAGES = {
    "bin": [
        {
            "name": "Tool",
            "bin_name": "tool",
            "download_url": "https://example.com/bin/x86_64/tool",
            "bsum": "abc",
        },
        {
            "name": "tool",
            "bin_name": "tool",
            "download_url": "https://example.com/bin/extra/tool",
            "bsum": "def",
        },
    ]
}


@pytest.fixture
def repo(tmp_path):
    return Repository(
        name="main",
        url=REPO_URL,
        path=tmp_path / "registry" / "main",
        sources={"bin": SOURCE_URL},
    )


def test_group_packages_by_lowercase_name_and_variant():
    grouped = group_packages(PACKAGES, arch="x86_64")
    assert list(grouped) == ["bin"]
    assert list(grouped["bin"]) == ["tool"]
    variants = [p.variant for p in grouped["bin"]["tool"]]
    assert variants == [None, "extra"]


def test_group_packages_short_url_has_no_variant():
    grouped = group_packages({"bin": [{"name": "a", "download_url": "a"}]}, arch="x")
    assert grouped["bin"]["a"][0].variant is None


def test_execute_caches_grouped_metadata(tmp_path, repo):
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO_URL}/metadata.json", body=json.dumps(PACKAGES))
        rsps.add(responses.GET, f"{SOURCE_URL}/bin.default.png", body=b"png-bytes")
        content = fetcher.execute(repo)

    assert repo.path.read_bytes() == content
    unpacked = msgpack.unpackb(content, raw=False)
    grouped = group_packages(PACKAGES)
    assert unpacked == {
        key: {n: [p.to_dict() for p in pkgs] for n, pkgs in by_name.items()}
        for key, by_name in grouped.items()
    }
    icon = tmp_path / "registry" / "icons" / "main-bin.png"
    assert icon.read_bytes() == b"png-bytes"


def test_execute_uses_custom_metadata_name(tmp_path, repo):
    repo.metadata = "custom.json"
    repo.sources = {}
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO_URL}/custom.json", body="{}")
        content = fetcher.execute(repo)
    assert msgpack.unpackb(content, raw=False) == {}


def test_execute_rejects_invalid_json(tmp_path, repo):
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO_URL}/metadata.json", body="not json")
        with pytest.raises(ValueError):
            fetcher.execute(repo)
    assert not repo.path.exists()


def test_execute_ignores_icon_failure(tmp_path, repo):
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO_URL}/metadata.json", body="{}")
        rsps.add(responses.GET, f"{SOURCE_URL}/bin.default.png", status=500)
        content = fetcher.execute(repo)
    assert repo.path.read_bytes() == content
    assert not (tmp_path / "registry" / "icons" / "main-bin.png").exists()


def test_fetch_icons_skips_existing(tmp_path, repo):
    icon = tmp_path / "registry" / "icons" / "main-bin.png"
    icon.parent.mkdir(parents=True)
    icon.write_bytes(b"old")
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock():
        assert fetcher.fetch_icons(repo) == []
    assert icon.read_bytes() == b"old"


def test_fetch_icons_raises_on_download_error(tmp_path, repo):
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{SOURCE_URL}/bin.default.png", status=404)
        with pytest.raises(requests.HTTPError):
            fetcher.fetch_icons(repo)


def test_checksum_default_and_custom(tmp_path, repo):
    fetcher = MetadataFetcher(tmp_path / "registry")
    with responses.RequestsMock() as rsps:
        rsps.add(responses.GET, f"{REPO_URL}/metadata.json.bsum", body=b"sum1")
        rsps.add(responses.GET, f"{REPO_URL}/other.json.bsum", body=b"sum2")
        assert fetcher.checksum(repo) == b"sum1"
        repo.metadata = "other.json"
        assert fetcher.checksum(repo) == b"sum2"