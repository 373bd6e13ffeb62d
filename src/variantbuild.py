#!/usr/bin/env python3
"""variantbuild.py - builds debug, fuzz and coverage variants of a source tree

features:

- Single script which replicates a source tree and builds it three times
- Variants: debug (-O0 -g), fuzz (instrumenting compiler), coverage (gcov)
- Uses a user-supplied build script, or the project's configure + make
- Each variant gets its own scoped environment: nothing leaks between builds

environment:

    SRC_DIR     source tree to build (default: /src/target)
    FUZZ_CC     fuzzing C compiler (default: afl-clang-fast)
    FUZZ_CXX    fuzzing C++ compiler (default: afl-clang-fast++)
    CFLAGS      extra C flags appended to every variant
    CXXFLAGS    extra C++ flags appended to every variant
    MAKE        make program (default: make)
    DEBUG       '1' for debug logging
    COLOR       '0' to disable colored logging

class structure:

Variant
Settings
BuildStep

ShellCmd
    SourceTree
    AbstractBuilder
        ScriptBuilder
        AutotoolsBuilder

"""

import argparse
import datetime
import logging
import os
import shutil
import stat
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
Environ = Mapping[str, str]


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def join_flags(*flags: str) -> str:
    """join non-empty flag strings with single spaces"""
    return " ".join(f.strip() for f in flags if f and f.strip())


def cpu_count() -> int:
    """number of processors usable by this process"""
    if hasattr(os, "sched_getaffinity"):
        return len(os.sched_getaffinity(0)) or 1
    return os.cpu_count() or 1


# ----------------------------------------------------------------------------
# constants

DEFAULT_SRC_DIR = "/src/target"
DEFAULT_FUZZ_CC = "afl-clang-fast"
DEFAULT_FUZZ_CXX = "afl-clang-fast++"
DEFAULT_MAKE = "make"
SHELL = "bash"
MAKEFILES = ("GNUmakefile", "makefile", "Makefile")

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=sys.stderr.isatty())

# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors"""

    exit_code = 1


class ConfigurationError(BuildError):
    """Exception for a missing or invalid source directory or build script"""

    exit_code = 2


class BuildSystemError(BuildError):
    """Exception for an unrecognized build system"""

    exit_code = 3


class ReplicationError(BuildError):
    """Exception for failures while copying or removing source trees"""

    exit_code = 4


class CommandError(BuildError):
    """Exception for command execution errors"""

    exit_code = 1

    def __init__(self, msg: str, returncode: Optional[int] = None) -> None:
        super().__init__(msg)
        self.returncode = returncode


class StepError(CommandError):
    """A configure, build-script or make step failed for one variant"""

    exit_code = 5

    def __init__(
        self, variant: "Variant", step: str, returncode: Optional[int] = None
    ) -> None:
        if returncode is None:
            msg = f"[{variant.tag}] {step} failed (could not be started)"
        else:
            msg = f"[{variant.tag}] {step} failed (exit {returncode})"
        super().__init__(msg, returncode)
        self.variant = variant
        self.step = step


# ----------------------------------------------------------------------------
# dataclasses


@dataclass(frozen=True)
class Variant:
    """One of the three build configurations."""

    name: str
    tag: str
    suffix: str
    flags: str
    use_fuzz_compiler: bool = False
    configure_libs: str = ""

    def cflags(self, settings: "Settings") -> str:
        """variant C flags followed by the user's extra C flags"""
        return join_flags(self.flags, settings.extra_cflags)

    def cxxflags(self, settings: "Settings") -> str:
        """variant C++ flags followed by the user's extra C++ flags"""
        return join_flags(self.flags, settings.extra_cxxflags)

    def environment(
        self,
        settings: "Settings",
        base: Optional[Environ] = None,
        configure: bool = False,
    ) -> dict[str, str]:
        """Return a fresh environment for one invocation of this variant.

        The result is a copy of `base` (default: the process environment)
        with CFLAGS/CXXFLAGS replaced, CC/CXX pointing at the fuzz compilers
        for the fuzz variant, and LIBS extended for a coverage configure.
        `base` itself is never modified.
        """
        env = dict(os.environ if base is None else base)
        env["CFLAGS"] = self.cflags(settings)
        env["CXXFLAGS"] = self.cxxflags(settings)
        if self.use_fuzz_compiler:
            env["CC"] = settings.fuzz_cc
            env["CXX"] = settings.fuzz_cxx
        if configure and self.configure_libs:
            env["LIBS"] = join_flags(env.get("LIBS", ""), self.configure_libs)
        return env


DEBUG_VARIANT = Variant(name="debug", tag="dbg", suffix="", flags="-O0 -g -ggdb")
FUZZ_VARIANT = Variant(
    name="fuzz", tag="fuzz", suffix="-fuzz", flags="-g -ggdb", use_fuzz_compiler=True
)
COVERAGE_VARIANT = Variant(
    name="coverage",
    tag="cov",
    suffix="-cov",
    flags="-fprofile-arcs -ftest-coverage",
    configure_libs="-lgcov",
)

# build order
VARIANTS = (DEBUG_VARIANT, FUZZ_VARIANT, COVERAGE_VARIANT)


@dataclass
class Settings:
    """Configuration resolved from the environment."""

    source_dir: Path
    fuzz_cc: str = DEFAULT_FUZZ_CC
    fuzz_cxx: str = DEFAULT_FUZZ_CXX
    extra_cflags: str = ""
    extra_cxxflags: str = ""

    @classmethod
    def from_env(cls, environ: Optional[Environ] = None) -> "Settings":
        """read SRC_DIR, FUZZ_CC, FUZZ_CXX, CFLAGS and CXXFLAGS"""
        env = os.environ if environ is None else environ
        return cls(
            source_dir=Path(env.get("SRC_DIR") or DEFAULT_SRC_DIR),
            fuzz_cc=env.get("FUZZ_CC") or DEFAULT_FUZZ_CC,
            fuzz_cxx=env.get("FUZZ_CXX") or DEFAULT_FUZZ_CXX,
            extra_cflags=env.get("CFLAGS", "").strip(),
            extra_cxxflags=env.get("CXXFLAGS", "").strip(),
        )

    def validate(self) -> None:
        """fail if the source directory does not exist"""
        if not self.source_dir.is_dir():
            raise ConfigurationError(
                f"source directory does not exist: {self.source_dir}"
            )


@dataclass
class BuildStep:
    """A single command run for one variant."""

    variant: Variant
    description: str
    command: list[str]
    cwd: Path
    env: dict[str, str]
    best_effort: bool = False
    quiet: bool = False

    def __str__(self) -> str:
        return " ".join(self.command)


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides command execution and file/folder handling."""

    log: logging.Logger

    def cmd(
        self,
        shellcmd: list[str],
        cwd: Pathlike = ".",
        env: Optional[Environ] = None,
        quiet: bool = False,
    ) -> None:
        """Run command within working directory

        Args:
            shellcmd: Command as list of args
            cwd: Working directory for command execution
            env: Complete environment for the child process
            quiet: Discard the command's output

        Raises:
            CommandError: If the command fails or cannot be started
        """
        self.log.info(" ".join(shellcmd))
        output = subprocess.DEVNULL if quiet else None
        try:
            subprocess.check_call(
                shellcmd, cwd=str(cwd), env=env, stdout=output, stderr=output
            )
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(
                f"Command failed: {' '.join(shellcmd)}", e.returncode
            ) from e
        except OSError as e:
            self.log.critical("Command could not be started: %s", e)
            raise CommandError(f"Command could not be started: {shellcmd[0]}") from e

    def try_cmd(
        self,
        shellcmd: list[str],
        cwd: Pathlike = ".",
        env: Optional[Environ] = None,
        quiet: bool = False,
    ) -> bool:
        """Run command, ignoring failure. Returns True on success."""
        self.log.info(" ".join(shellcmd))
        output = subprocess.DEVNULL if quiet else None
        try:
            returncode = subprocess.call(
                shellcmd, cwd=str(cwd), env=env, stdout=output, stderr=output
            )
        except OSError as e:
            self.log.debug("could not start %s: %s", shellcmd[0], e)
            return False
        return returncode == 0

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy a folder recursively -- behaves like `cp -r`"""
        self.log.info("copy %s to %s", src, dst)
        try:
            shutil.copytree(src, dst, symlinks=True, copy_function=self.copy_file)
        except (shutil.Error, OSError) as e:
            raise ReplicationError(f"could not copy {src} to {dst}: {e}") from e

    def copy_file(self, src: str, dst: str) -> str:
        """copy2, but recreate fifos and device nodes and skip sockets"""
        st = os.lstat(src)
        mode = st.st_mode
        if stat.S_ISFIFO(mode):
            os.mkfifo(dst, stat.S_IMODE(mode))
        elif stat.S_ISCHR(mode) or stat.S_ISBLK(mode):
            os.mknod(dst, mode, st.st_rdev)
        elif stat.S_ISSOCK(mode):
            self.log.debug("skipping socket: %s", src)
        else:
            shutil.copy2(src, dst)
        return dst

    def remove(self, path: Pathlike) -> None:
        """Remove file, symlink or folder if present."""
        path = Path(path)
        if not path.exists() and not path.is_symlink():
            return
        try:
            if path.is_dir() and not path.is_symlink():
                self.log.debug("Removing folder: %s", path)
                shutil.rmtree(path)
            else:
                self.log.debug("Removing file: %s", path)
                path.unlink()
        except OSError as e:
            raise ReplicationError(f"could not remove {path}: {e}") from e


# ----------------------------------------------------------------------------
# main classes


class SourceTree(ShellCmd):
    """The original source tree and its fuzz and coverage copies"""

    def __init__(self, root: Pathlike) -> None:
        self.root = Path(os.path.abspath(root))
        if not self.root.name:
            raise ConfigurationError(f"cannot build in a filesystem root: {self.root}")
        self.fuzz = self.path_for(FUZZ_VARIANT)
        self.cov = self.path_for(COVERAGE_VARIANT)
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.root}'>"

    @property
    def copies(self) -> list[Path]:
        """directories created by replicate()"""
        return [self.fuzz, self.cov]

    def path_for(self, variant: Variant) -> Path:
        """directory in which a variant is built"""
        return self.root.with_name(self.root.name + variant.suffix)

    def has_configure(self) -> bool:
        return (self.root / "configure").is_file()

    def has_makefile(self) -> bool:
        return any((self.root / name).is_file() for name in MAKEFILES)

    def replicate(self) -> None:
        """replace the fuzz and coverage copies with fresh copies of root"""
        for copy in self.copies:
            self.remove(copy)
            self.copy(self.root, copy)


class AbstractBuilder(ShellCmd):
    """Abstract builder class with the steps common to both strategies."""

    name: str

    def __init__(
        self,
        settings: Settings,
        jobs: Optional[int] = None,
        make: Optional[str] = None,
        base_env: Optional[Environ] = None,
    ) -> None:
        self.settings = settings
        self.tree = SourceTree(settings.source_dir)
        self.jobs = jobs or cpu_count()
        self.base_env = dict(os.environ if base_env is None else base_env)
        self.make = make or self.base_env.get("MAKE") or DEFAULT_MAKE
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.tree.root}'>"

    def env_for(self, variant: Variant, configure: bool = False) -> dict[str, str]:
        """scoped environment for one invocation"""
        return variant.environment(self.settings, self.base_env, configure=configure)

    def run_step(self, step: BuildStep) -> None:
        """run a step, raising StepError unless it is best-effort"""
        tag = step.variant.tag
        self.log.debug("[%s] %s in %s", tag, step.description, step.cwd)
        if step.best_effort:
            if not self.try_cmd(step.command, step.cwd, step.env, step.quiet):
                self.log.info("[%s] %s failed (ignored)", tag, step.description)
            return
        try:
            self.cmd(step.command, step.cwd, step.env, step.quiet)
        except CommandError as e:
            raise StepError(step.variant, step.description, e.returncode) from e

    def validate(self) -> None:
        """check configuration before touching the filesystem"""
        self.settings.validate()

    def setup(self) -> None:
        """create fresh copies of the source tree"""
        self.log.info("replicating %s", self.tree.root)
        self.tree.replicate()

    def configure(self) -> None:
        """configure all variants"""

    def build(self) -> None:
        """build all variants"""

    def plan(self) -> list[BuildStep]:
        """steps a run would execute, in order"""
        return []

    def recognized(self) -> bool:
        """whether a run can find something to build with"""
        return True

    def process(self) -> None:
        """main builder process"""
        self.validate()
        self.setup()
        self.configure()
        self.build()
        self.log.info(
            "built %s", ", ".join(str(self.tree.path_for(v)) for v in VARIANTS)
        )

    def dry_run(self) -> None:
        """Display build plan without copying or building."""
        print("\n" + "=" * 60)
        print(f"BUILD PLAN (dry-run): {self.name}")
        print("=" * 60)

        print("\n[Directories]")
        for variant in VARIANTS:
            print(f"  {variant.name:<9} {self.tree.path_for(variant)}")

        print("\n[Compilers]")
        print(f"  fuzz CC:   {self.settings.fuzz_cc}")
        print(f"  fuzz CXX:  {self.settings.fuzz_cxx}")
        print(f"  make jobs: {self.jobs}")

        print("\n[Flags]")
        for variant in VARIANTS:
            print(f"  {variant.tag:<4} CFLAGS=\"{variant.cflags(self.settings)}\"")
            print(f"  {variant.tag:<4} CXXFLAGS=\"{variant.cxxflags(self.settings)}\"")

        print("\n[Steps]")
        if not self.recognized():
            print(f"  unrecognized build system in {self.tree.root}: a run would fail")
        steps = self.plan()
        if steps:
            for step in steps:
                suffix = " (best-effort)" if step.best_effort else ""
                print(f"  [{step.variant.tag}] {step}{suffix}")
        else:
            print("  (none)")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


class ScriptBuilder(AbstractBuilder):
    """Runs a user-supplied build script in each variant directory"""

    name = "build script"

    def __init__(self, settings: Settings, script: Pathlike, **kwds) -> None:
        super().__init__(settings, **kwds)
        script = Path(script)
        if not script.is_absolute():
            script = Path.cwd() / script
        self.script = script

    def validate(self) -> None:
        super().validate()
        if not self.script.is_file():
            raise ConfigurationError(f"build script does not exist: {self.script}")

    def script_step(self, variant: Variant) -> BuildStep:
        return BuildStep(
            variant=variant,
            description=f"build script {self.script.name}",
            command=[SHELL, str(self.script)],
            cwd=self.tree.path_for(variant),
            env=self.env_for(variant),
        )

    def plan(self) -> list[BuildStep]:
        return [self.script_step(v) for v in VARIANTS]

    def build(self) -> None:
        for variant in VARIANTS:
            self.log.info("[%s] building with %s", variant.tag, self.script)
            self.run_step(self.script_step(variant))


class AutotoolsBuilder(AbstractBuilder):
    """Runs configure (when present) and make in each variant directory"""

    name = "configure + make"

    def configure_step(self, variant: Variant) -> BuildStep:
        return BuildStep(
            variant=variant,
            description="configure",
            command=["./configure"],
            cwd=self.tree.path_for(variant),
            env=self.env_for(variant, configure=True),
        )

    def make_steps(self, variant: Variant) -> list[BuildStep]:
        """make clean, make, and make install for the fuzz variant"""
        cwd = self.tree.path_for(variant)
        env = self.env_for(variant)
        steps = [
            BuildStep(variant, "make clean", [self.make, "clean"], cwd, env,
                      best_effort=True),
            BuildStep(variant, "make", [self.make, f"-j{self.jobs}"], cwd, env),
        ]
        if variant is FUZZ_VARIANT:
            steps.append(
                BuildStep(variant, "make install", [self.make, "install"], cwd, env,
                          best_effort=True, quiet=True)
            )
        return steps

    def plan(self) -> list[BuildStep]:
        steps = []
        if self.tree.has_configure():
            steps.extend(self.configure_step(v) for v in VARIANTS)
        for variant in VARIANTS:
            steps.extend(self.make_steps(variant))
        return steps

    def recognized(self) -> bool:
        return self.tree.has_configure() or self.tree.has_makefile()

    def configure(self) -> None:
        """run ./configure in every variant directory"""
        if not self.tree.has_configure():
            self.log.info("no configure script in %s", self.tree.root)
            return
        for variant in VARIANTS:
            self.log.info("[%s] configuring", variant.tag)
            self.run_step(self.configure_step(variant))

    def build(self) -> None:
        """run make in every variant directory"""
        if not self.tree.has_makefile():
            raise BuildSystemError(
                f"unrecognized build system in {self.tree.root}: "
                "no Makefile and no build script given"
            )
        for variant in VARIANTS:
            self.log.info("[%s] building with %d jobs", variant.tag, self.jobs)
            for step in self.make_steps(variant):
                self.run_step(step)


def select_builder(
    settings: Settings, script: Optional[Pathlike] = None, **kwds
) -> AbstractBuilder:
    """build script if one is given, configure + make otherwise"""
    if script:
        return ScriptBuilder(settings, script, **kwds)
    return AutotoolsBuilder(settings, **kwds)


def main(argv: Optional[list[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="variantbuild",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Build debug, fuzz and coverage variants of a source tree",
        epilog="environment: SRC_DIR, FUZZ_CC, FUZZ_CXX, CFLAGS, CXXFLAGS, MAKE",
    )
    opt = parser.add_argument

    # fmt: off
    opt("script", nargs="?", help="build script to run in each variant directory")
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("-j", "--jobs", help="# of make jobs (default: %(default)s)", type=int, default=cpu_count())
    opt("--version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("variantbuild")

    settings = Settings.from_env()

    try:
        builder = select_builder(settings, args.script, jobs=args.jobs)
        if args.dry_run:
            builder.validate()
            builder.dry_run()
            sys.exit(0)
        builder.process()
    except BuildError as e:
        log.error("%s", e)
        sys.exit(e.exit_code)
    except KeyboardInterrupt:
        log.error("interrupted")
        sys.exit(130)


if __name__ == "__main__":
    main()
