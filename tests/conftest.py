import os
import pytest
from pathlib import Path


STUB_MAKE = """\
#!/bin/sh
echo "$(basename "$PWD")|make $*|$CFLAGS|$CXXFLAGS|${CC:-}|${CXX:-}" >> "$STUB_LOG"
case "$1" in
  clean) exit "${STUB_CLEAN_STATUS:-0}" ;;
  install) exit "${STUB_INSTALL_STATUS:-0}" ;;
esac
if [ "$(basename "$PWD")" = "${STUB_FAIL_DIR:-}" ]; then
  exit 2
fi
exit 0
"""

STUB_CONFIGURE = """\
#!/bin/sh
echo "$(basename "$PWD")|configure|$CFLAGS|$CXXFLAGS|${CC:-}|${LIBS:-}" >> "$STUB_LOG"
echo "all:" > Makefile
exit "${STUB_CONFIGURE_STATUS:-0}"
"""

STUB_SCRIPT = """\
echo "$(basename "$PWD")|script|$CFLAGS|$CXXFLAGS|${CC:-}|${CXX:-}" >> "$STUB_LOG"
if [ "$(basename "$PWD")" = "${STUB_FAIL_DIR:-}" ]; then
  exit 3
fi
"""


def write_executable(path: Path, text: str) -> Path:
    path.write_text(text)
    path.chmod(0o755)
    return path


def read_log(path: Path) -> list[list[str]]:
    """stub invocations as [dir, step, CFLAGS, CXXFLAGS, ...] records"""
    if not path.exists():
        return []
    return [line.split("|") for line in path.read_text().splitlines()]


@pytest.fixture
def src(tmp_path):
    """a source tree with a single C file"""
    src = tmp_path / "src"
    src.mkdir()
    (src / "main.c").write_text("int main(void) { return 0; }\n")
    return src


@pytest.fixture
def stub_log(tmp_path):
    return tmp_path / "calls.log"


@pytest.fixture
def stub_make(tmp_path):
    bindir = tmp_path / "bin"
    bindir.mkdir()
    return write_executable(bindir / "make", STUB_MAKE)


@pytest.fixture
def base_env(stub_log):
    """minimal child environment shared by all stub invocations"""
    return {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "STUB_LOG": str(stub_log)}
