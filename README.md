# soarpkg

A library for managing portable Linux binaries from remote package
repositories. It fetches repository metadata, caches it locally in
MessagePack, resolves package queries, and installs, updates, removes and
runs packages. Installed packages are recorded in a MessagePack file.

## Installation

```
pip install soarpkg
```

To run the test suite:

```
pip install "soarpkg[test]"
pytest
```

## Locations

`soarpkg.package.SoarPaths` holds every location the library uses. By
default its root is `$XDG_DATA_HOME/soar` (or `~/.local/share/soar`), with
`bin`, `packages`, `installs`, `registry` and `cache` beneath it;
`data_path` (where desktop entries and icons are linked) defaults to the
XDG data directory itself.

## Package queries

Packages are addressed with queries of the form `[variant/]name[#collection]`:

```python
from soarpkg.package import parse_package_query

query = parse_package_query("ffmpeg/ffprobe#bin")
# query.name == "ffprobe", query.variant == "ffmpeg", query.collection == "bin"
```

The collection is lower-cased; an empty collection after `#` means none.

## Repositories and metadata

A `soarpkg.fetcher.Repository` has a `name`, a base `url`, the local `path`
of its cached metadata, a mapping of collection `sources`, and an optional
`metadata` file name (default `metadata.json`).

- `MetadataFetcher(registry_path).execute(repo)` downloads the JSON
  metadata, groups each collection's packages by lower-cased name (a
  package's variant is the second-to-last segment of its download URL
  unless that segment is the machine architecture, see `group_packages`),
  writes it as MessagePack to `repo.path` and tries to download missing
  default icons.
- `MetadataFetcher.checksum(repo)` downloads `<metadata>.bsum`.
- `MetadataLoader().execute(repo, fetcher)` returns the cached metadata,
  refetching it when the remote checksum differs from the one stored in
  `<name>.remote.bsum` next to the cache.

## Working with a registry

```python
from pathlib import Path
from soarpkg.fetcher import Repository
from soarpkg.package import SoarPaths
from soarpkg.registry import PackageRegistry

paths = SoarPaths()
repositories = [
    Repository(
        name="example",
        url="https://repo.example.com",
        path=paths.registry_path / "example",
        sources={"bin": "https://repo.example.com/bin"},
    )
]
registry = PackageRegistry.create(repositories, paths)

registry.search("curl", case_sensitive=False, limit=10)   # list of lines
registry.query("curl#bin")                                # fields shown per package
registry.install_packages(["curl"], force=False, portable=None,
                          portable_home=None, portable_config=None,
                          yes=True, quiet=False)          # number installed
registry.update(None)                                     # number updated
registry.remove_packages(["curl"], exact=False)           # removed records
```

Other operations:

- `list(collection)`: every known package, sorted by collection and name;
  raises `LookupError` when there are none.
- `info(package_names)`: with exactly one name, the same as `query`;
  otherwise a summary of installed packages with sizes and totals per
  collection.
- `inspect(package_name, inspect_type)`: download and return the build log
  (`"log"`) or build script; asks before downloading anything over 1 MiB.
- `run(command, yes)`: download a package into the cache directory and run
  it with the remaining arguments, returning its exit code.
- `use_package(package_name)`: point the binary link at an installed
  package, installing it when it is not yet installed.

When several packages match a name and `yes` is false, the user is asked
to choose one (`soarpkg.selection.select_single_package`). The prompt
function is `PackageStorage.ask`, `input` by default.

Installation downloads with resume support, checks the checksum, moves the
file into `packages/<checksum[:8]>-<name>/`, marks it executable, tags it
with the `user.managed_by` extended attribute where supported, and links it
into the `bin` directory. The default checksum function is SHA-256 of the
file; pass `checksum_func` to `PackageStorage` to use another. Setting
`parallel=True` installs with a thread pool of `parallel_limit` workers.

## Desktop integration and icons

`soarpkg.appimage` creates portable home and config directories
(`setup_portable_dir`), rewrites and links `.desktop` entries
(`process_desktop`), resizes icons to the nearest standard size and links
them into the hicolor theme (`process_icon`), and can fetch both from the
URLs published beside a package (`integrate_using_remote_files`).

`soarpkg.image` draws a package's icon in the terminal using the kitty
graphics protocol, sixel, or coloured half-block characters, depending on
what the terminal reports.

## What it does not do

- There is no command-line program; everything is used from Python.
- Repositories and settings are passed in code; no configuration file is read.
- The type of an installed file is not detected. Integration only happens
  when `PackageStorage.file_type` is given and returns `"appimage"` (portable
  directories are set up) or `"flatimage"` (remote icon and desktop entry
  are installed). Icons and desktop entries are not extracted from inside
  AppImages.
- Progress is reported through `logging`, not with progress bars.