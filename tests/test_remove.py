import pytest

from soarpkg.installed import InstalledPackages, NotInstalledError
from soarpkg.package import Package, ResolvedPackage, SoarPaths
from soarpkg.remove import Remover

CHECKSUM = "0123456789abcdef"


@pytest.fixture
def paths(tmp_path):
    return SoarPaths(root=tmp_path / "soar", data_path=tmp_path / "data")


@pytest.fixture
def resolved():
    package = Package(name="tool", bin_name="tool", version="1.0", size="1 KiB")
    return ResolvedPackage(repo_name="main", collection="bin", package=package)


def _install(paths, resolved):
    installed = InstalledPackages.load(paths.install_track_path)
    installed.register_package(resolved, CHECKSUM)
    install_path = resolved.package.get_install_path(paths.packages_path, CHECKSUM)
    install_path.parent.mkdir(parents=True)
    install_path.write_bytes(b"bin")
    paths.bin_path.mkdir(parents=True)
    link = paths.bin_path / "tool"
    link.symlink_to(install_path)
    return installed, install_path, link


def test_execute_removes_everything(paths, resolved):
    installed, install_path, link = _install(paths, resolved)

    Remover(resolved, paths).execute(installed)

    assert not install_path.parent.exists()
    assert not link.is_symlink()
    assert installed.packages == []
    assert InstalledPackages.load(paths.install_track_path).packages == []


def test_execute_not_installed(paths, resolved):
    installed = InstalledPackages.load(paths.install_track_path)
    with pytest.raises(NotInstalledError, match="not installed"):
        Remover(resolved, paths).execute(installed)


def test_remove_symlink_keeps_other_target(tmp_path, paths, resolved):
    other = tmp_path / "other"
    other.write_text("x")
    paths.bin_path.mkdir(parents=True)
    link = paths.bin_path / "tool"
    link.symlink_to(other)

    Remover(resolved, paths).remove_symlink(tmp_path / "elsewhere")

    assert link.is_symlink()
    assert link.resolve() == other.resolve()


def test_remove_package_path(tmp_path, paths, resolved):
    directory = tmp_path / "pkgdir"
    (directory / "nested").mkdir(parents=True)
    (directory / "nested" / "file").write_text("x")
    remover = Remover(resolved, paths)

    remover.remove_package_path(directory)
    remover.remove_package_path(directory)

    assert not directory.exists()