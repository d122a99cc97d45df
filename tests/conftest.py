from __future__ import annotations

import json
import shutil
import subprocess
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

from nativeinterop import (
    InteropConfig,
    LibraryRegistry,
    UnsupportedPlatform,
    current_platform,
    parse_schema,
    resolve,
)

MATHLIB_SOURCES = Path(__file__).resolve().parent / "native" / "mathlib"


def _compiler() -> str | None:
    for name in ("cc", "gcc", "clang"):
        found = shutil.which(name)
        if found:
            return found
    return None


@pytest.fixture(scope="session")
def mathlib_dir(tmp_path_factory) -> Path:
    """Compile the mathlib fixture and place it beside its mapping file."""

    compiler = _compiler()
    if compiler is None or sys.platform.startswith("win"):
        pytest.skip("no C compiler available to build the mathlib fixture")

    mapping = json.loads((MATHLIB_SOURCES / "mathlib.ekko.json").read_text(encoding="utf-8"))
    os_name, arch = current_platform()
    try:
        file_name = resolve(parse_schema(mapping), os_name, arch)
    except UnsupportedPlatform:
        pytest.skip(f"mathlib fixture declares no library for {os_name}/{arch}")

    out_dir = tmp_path_factory.mktemp("mathlib")
    shared = "-dynamiclib" if sys.platform == "darwin" else "-shared"
    subprocess.run(
        [compiler, shared, "-fPIC", "-O1", "-o", str(out_dir / file_name),
         str(MATHLIB_SOURCES / "mathlib.c"), "-lm"],
        check=True,
    )
    shutil.copy2(MATHLIB_SOURCES / "mathlib.ekko.json", out_dir / "mathlib.ekko.json")
    return out_dir


@pytest.fixture
def mathlib_registry(mathlib_dir: Path):
    registry = LibraryRegistry(candidates=lambda name: [mathlib_dir / f"{name}.ekko.json"])
    yield registry
    registry.shutdown()


@pytest.fixture
def mathlib(mathlib_registry: LibraryRegistry):
    return mathlib_registry.load("mathlib")


# ---------------------------
# Compiler-free fixtures
# ---------------------------

def fake_mapping(**exports) -> dict:
    return {
        "library": {"linux": {"x64": "libfake.so"}, "windows": {"x64": "fake.dll"}},
        "version": "2.1.0",
        "structs": {
            "Point": {"fields": [{"name": "x", "type": "double"}, {"name": "y", "type": "double"}]},
        },
        "exports": exports or {
            "add": {
                "entryPoint": "add",
                "returns": "int",
                "parameters": [{"name": "a", "type": "int"}, {"name": "b", "type": "int"}],
            },
            "negate": {
                "entryPoint": "negate",
                "returns": "int",
                "parameters": [{"name": "value", "type": "int"}],
            },
        },
    }


class FakeLoader:
    """Stands in for the OS loader: hands out namespaces of Python callables."""

    def __init__(self, symbols: dict | None = None):
        self.symbols = symbols if symbols is not None else {
            "add": lambda a, b: a + b,
            "negate": lambda value: -value,
        }
        self.opened: list[str] = []
        self.closed: list[object] = []

    def open(self, ffi, path: str):
        self.opened.append(path)
        return SimpleNamespace(**self.symbols)

    def close(self, ffi, handle) -> None:
        self.closed.append(handle)


@pytest.fixture
def mapping_dir(tmp_path: Path) -> Path:
    (tmp_path / "fake.ekko.json").write_text(json.dumps(fake_mapping()), encoding="utf-8")
    return tmp_path


@pytest.fixture
def fake_loader() -> FakeLoader:
    return FakeLoader()


@pytest.fixture
def fake_registry(mapping_dir: Path, fake_loader: FakeLoader):
    registry = LibraryRegistry(
        config=InteropConfig(search_dirs=(str(mapping_dir),)),
        candidates=lambda name: [mapping_dir / f"{name}.ekko.json"],
        platform=("linux", "x64"),
        opener=fake_loader.open,
        closer=fake_loader.close,
    )
    yield registry
    registry.shutdown()
