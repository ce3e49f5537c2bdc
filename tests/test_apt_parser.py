from polypkg.core.models import PackageInfo, PackageStatus
from polypkg.managers.apt_parser import (
    apply_dpkg_status,
    parse_cache_stats,
    parse_dpkg_status,
    parse_install_output,
    parse_list_installed,
    parse_list_upgradable,
    parse_remove_output,
    parse_search_output,
    parse_show_output,
)

SEARCH_OUTPUT = """\
Sorting...
Full Text Search...
vim/jammy-updates,jammy-security 2:8.2.3995-1ubuntu2.15 amd64 [installed]
  Vi IMproved - enhanced vi editor

vim-tiny/jammy-updates 2:8.2.3995-1ubuntu2.15 amd64 [upgradable from: 2:8.2.3995-1ubuntu2.13]
  Vi IMproved - enhanced vi editor - compact version

neovim/jammy 0.6.1-3 amd64
  heavily refactored vim fork
"""

INSTALL_OUTPUT = """\
Reading package lists...
Building dependency tree...
The following NEW packages will be installed:
  tree
0 upgraded, 1 newly installed, 0 to remove and 3 not upgraded.
Unpacking tree (2.0.2-1) ...
Setting up tree (2.0.2-1) ...
Setting up libfoo1:amd64 (1.4-2) ...
Processing triggers for man-db (2.10.2-1) ...
"""

REMOVE_OUTPUT = """\
The following packages will be REMOVED:
  tree
Removing tree (2.0.2-1) ...
Removing libfoo1:amd64 (1.4-2) ...
Processing triggers for man-db (2.10.2-1) ...
"""

SHOW_OUTPUT = """\
Package: tree
Architecture: amd64
Version: 2.0.2-1
Priority: optional
Section: universe/utils
Maintainer: Ubuntu Developers <ubuntu-devel-discuss@lists.ubuntu.com>
Installed-Size: 112
Depends: libc6 (>= 2.34)
Description: displays an indented directory tree, in color
 Tree is a recursive directory listing command.

Package: tree
Version: 1.8.0-1
"""


def test_parse_search_output():
    packages = parse_search_output(SEARCH_OUTPUT)
    by_name = {p.name: p for p in packages}

    assert [p.name for p in packages] == ["vim", "vim-tiny", "neovim"]

    vim = by_name["vim"]
    assert vim.status is PackageStatus.INSTALLED
    assert vim.version == vim.new_version == "2:8.2.3995-1ubuntu2.15"
    assert vim.category == "jammy-updates"
    assert vim.description == "Vi IMproved - enhanced vi editor"
    assert vim.metadata == {"arch": "amd64"}

    tiny = by_name["vim-tiny"]
    assert tiny.status is PackageStatus.UPGRADABLE
    assert tiny.version == "2:8.2.3995-1ubuntu2.13"
    assert tiny.new_version == "2:8.2.3995-1ubuntu2.15"

    neovim = by_name["neovim"]
    assert neovim.status is PackageStatus.AVAILABLE
    assert neovim.version == ""
    assert neovim.new_version == "0.6.1-3"
    assert all(p.manager_name == "apt" for p in packages)


def test_parse_search_output_empty():
    assert parse_search_output("Sorting...\nFull Text Search...\n") == []


def test_parse_dpkg_status():
    output = (
        "vim:amd64 install ok installed 2:8.2.3995-1ubuntu2.15\n"
        "neovim unknown ok not-installed \n"
        "old-tool deinstall ok config-files 1.0-1\n"
        "dpkg-query: no packages found matching ghost\n"
    )
    assert parse_dpkg_status(output) == {
        "vim": ("installed", "2:8.2.3995-1ubuntu2.15"),
        "neovim": ("not-installed", ""),
        "old-tool": ("config-files", "1.0-1"),
    }


def test_apply_dpkg_status():
    packages = [
        PackageInfo(name="vim", new_version="2.0", status=PackageStatus.AVAILABLE, manager_name="apt"),
        PackageInfo(name="git", new_version="3.0", status=PackageStatus.AVAILABLE, manager_name="apt"),
        PackageInfo(name="old-tool", new_version="1.0", status=PackageStatus.AVAILABLE, manager_name="apt"),
        PackageInfo(name="ghost", new_version="1.0", status=PackageStatus.AVAILABLE, manager_name="apt"),
    ]
    states = {"vim": ("installed", "1.0"), "git": ("installed", "3.0"), "old-tool": ("config-files", "1.0")}

    merged = {p.name: p for p in apply_dpkg_status(packages, states)}

    assert merged["vim"].status is PackageStatus.UPGRADABLE
    assert (merged["vim"].version, merged["vim"].new_version) == ("1.0", "2.0")
    assert merged["git"].status is PackageStatus.INSTALLED
    assert merged["old-tool"].status is PackageStatus.AVAILABLE
    assert merged["old-tool"].metadata["config_files"] is True
    assert merged["ghost"].status is PackageStatus.AVAILABLE


def test_parse_list_installed():
    output = "vim 2:8.2 amd64\nlibc6:i386 2.35-0ubuntu3 i386\n\n"
    packages = parse_list_installed(output)

    assert [(p.name, p.version, p.metadata["arch"]) for p in packages] == [
        ("vim", "2:8.2", "amd64"),
        ("libc6", "2.35-0ubuntu3", "i386"),
    ]
    assert all(p.status is PackageStatus.INSTALLED for p in packages)


def test_parse_list_upgradable():
    output = (
        "Listing...\n"
        "libssl3/jammy-updates 3.0.2-0ubuntu1.10 amd64 [upgradable from: 3.0.2-0ubuntu1.9]\n"
        "curl/jammy-security 7.81.0-1ubuntu1.14 amd64 [upgradable from: 7.81.0-1ubuntu1.13]\n"
    )
    packages = parse_list_upgradable(output)

    assert [p.name for p in packages] == ["libssl3", "curl"]
    assert packages[0].version == "3.0.2-0ubuntu1.9"
    assert packages[0].new_version == "3.0.2-0ubuntu1.10"
    assert packages[0].category == "jammy-updates"


def test_parse_install_output():
    packages = parse_install_output(INSTALL_OUTPUT)

    assert [(p.name, p.version) for p in packages] == [("tree", "2.0.2-1"), ("libfoo1", "1.4-2")]
    assert packages[1].metadata == {"arch": "amd64"}
    assert all(p.status is PackageStatus.INSTALLED for p in packages)


def test_parse_install_output_already_newest():
    output = "vim is already the newest version (2:8.2.3995-1ubuntu2.15).\n0 upgraded, 0 newly installed\n"
    packages = parse_install_output(output)

    assert len(packages) == 1
    assert packages[0].metadata["already_installed"] is True


def test_parse_install_output_without_setting_up():
    assert parse_install_output("Reading package lists...\nUnpacking tree (2.0.2-1) ...\n") == []


def test_parse_remove_output():
    packages = parse_remove_output(REMOVE_OUTPUT)

    assert [(p.name, p.version) for p in packages] == [("tree", "2.0.2-1"), ("libfoo1", "1.4-2")]
    assert all(p.status is PackageStatus.AVAILABLE for p in packages)


def test_parse_show_output_first_stanza():
    info = parse_show_output(SHOW_OUTPUT)

    assert info is not None
    assert info.name == "tree"
    assert info.new_version == "2.0.2-1"
    assert info.category == "universe/utils"
    assert info.description == "displays an indented directory tree, in color"
    assert info.metadata["arch"] == "amd64"
    assert info.metadata["installed_size"] == "112"


def test_parse_show_output_empty():
    assert parse_show_output("") is None


def test_parse_cache_stats():
    assert parse_cache_stats("Total package names: 63213 (1,264 k)\nTotal package structures: 1\n") == 63213
    assert parse_cache_stats("garbage") == 0
