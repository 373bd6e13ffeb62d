import os
import socket
import stat
import pytest
from unittest.mock import patch
from variantbuild import (
    SourceTree,
    ConfigurationError,
    ReplicationError,
    DEBUG_VARIANT,
    FUZZ_VARIANT,
    COVERAGE_VARIANT,
)


@pytest.fixture
def tree(src):
    return SourceTree(src)


def test_tree_paths(tree, src):
    """Test SourceTree path attributes"""
    assert tree.root == src
    assert tree.fuzz == src.parent / "src-fuzz"
    assert tree.cov == src.parent / "src-cov"
    assert tree.copies == [tree.fuzz, tree.cov]
    assert tree.path_for(DEBUG_VARIANT) == src
    assert tree.path_for(FUZZ_VARIANT) == tree.fuzz
    assert tree.path_for(COVERAGE_VARIANT) == tree.cov


def test_tree_relative_root(src, monkeypatch):
    monkeypatch.chdir(src)
    tree = SourceTree(".")
    assert tree.root == src.resolve()
    assert tree.fuzz == src.resolve().parent / "src-fuzz"


def test_tree_trailing_slash(src):
    tree = SourceTree(str(src) + os.sep)
    assert tree.fuzz == src.parent / "src-fuzz"


def test_replicate(tree, src):
    """Test replicate() creates independent copies"""
    (src / "sub").mkdir()
    (src / "sub" / "util.c").write_text("void f(void) {}\n")
    tree.replicate()
    for copy in tree.copies:
        assert (copy / "main.c").read_text() == (src / "main.c").read_text()
        assert (copy / "sub" / "util.c").exists()
    (tree.fuzz / "main.c").write_text("changed")
    assert (src / "main.c").read_text() != "changed"
    assert (tree.cov / "main.c").read_text() != "changed"


def test_replicate_removes_stale_copies(tree):
    """Test a sentinel in a stale copy does not survive a rerun"""
    tree.replicate()
    (tree.fuzz / "sentinel").write_text("stale")
    (tree.cov / "sentinel").write_text("stale")
    tree.replicate()
    assert not (tree.fuzz / "sentinel").exists()
    assert not (tree.cov / "sentinel").exists()
    assert (tree.fuzz / "main.c").exists()


def test_replicate_replaces_stale_file(tree):
    tree.fuzz.write_text("not a directory")
    tree.replicate()
    assert tree.fuzz.is_dir()


def test_replicate_preserves_executable_bit(tree, src):
    configure = src / "configure"
    configure.write_text("#!/bin/sh\n")
    configure.chmod(0o755)
    tree.replicate()
    assert os.access(tree.fuzz / "configure", os.X_OK)


def test_replicate_copy_failure(tree):
    with patch("shutil.copytree", side_effect=PermissionError("denied")):
        with pytest.raises(ReplicationError):
            tree.replicate()


def test_build_system_detection(tree, src):
    assert not tree.has_configure()
    assert not tree.has_makefile()
    (src / "configure").write_text("#!/bin/sh\n")
    assert tree.has_configure()
    (src / "Makefile").write_text("all:\n")
    assert tree.has_makefile()


def test_gnumakefile_detected(tree, src):
    (src / "GNUmakefile").write_text("all:\n")
    assert tree.has_makefile()


def test_filesystem_root_is_rejected():
    with pytest.raises(ConfigurationError, match="filesystem root"):
        SourceTree(os.sep)


@pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="needs named pipes")
def test_replicate_recreates_named_pipe(tree, src):
    os.mkfifo(src / "pipe")
    tree.replicate()
    for copy in tree.copies:
        assert stat.S_ISFIFO(os.lstat(copy / "pipe").st_mode)
        assert (copy / "main.c").exists()


@pytest.mark.skipif(not hasattr(socket, "AF_UNIX"), reason="needs unix sockets")
def test_replicate_skips_socket(tree, src):
    if len(str(src / "sock")) > 100:
        pytest.skip("socket path too long for AF_UNIX")
    sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
    try:
        sock.bind(str(src / "sock"))
        tree.replicate()
    finally:
        sock.close()
    for copy in tree.copies:
        assert not (copy / "sock").exists()
        assert (copy / "main.c").exists()
