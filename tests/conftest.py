"""Shared fixtures for isobuild tests.

Provides:
- A minimal ELF writer (both classes and byte orders), so inspection runs
  against real headers
- A reference recipe document matching pipelines/tws-rust.yaml
- In-process artifact producers and image assemblers standing in for the
  container engine
"""

import struct
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from isobuild.config import Settings
from isobuild.db import Base
from isobuild.pipeline.artifacts import compute_file_hash
from isobuild.pipeline.inspection import inspect_artifact
from isobuild.pipeline.stages import (
    BuildEnvironment,
    CompiledArtifact,
    PipelineExecutionError,
    RuntimeImage,
    RuntimeStage,
)
from isobuild.types import FailureKind

ET_REL = 1
ET_EXEC = 2
ET_DYN = 3
EM_MIPS = 8
EM_X86_64 = 62

SHT_PROGBITS = 1
SHT_SYMTAB = 2
SHT_STRTAB = 3
SHT_DYNAMIC = 6

PT_INTERP = 3

DT_NULL = 0
DT_NEEDED = 1

# struct formats per ELF class, without the byte-order prefix
_ELF_FORMATS = {
    64: {"header": "16sHHIQQQIHHHHHH", "section": "IIQQQQIIQQ", "dynamic": "qQ"},
    32: {"header": "16sHHIIIIIHHHHHH", "section": "IIIIIIIIII", "dynamic": "iI"},
}


def _align(data: bytearray, boundary: int = 8) -> None:
    while len(data) % boundary:
        data.append(0)


def _interp_segment(order: str, bits: int, offset: int, size: int) -> bytes:
    if bits == 64:
        return struct.pack(order + "IIQQQQQQ", PT_INTERP, 4, offset, 0, 0, size, size, 1)
    return struct.pack(order + "IIIIIIII", PT_INTERP, offset, 0, 0, size, size, 4, 1)


def write_elf(
    path: Path,
    needed: tuple[str, ...] = (),
    symtab: bool = False,
    debug_sections: tuple[str, ...] = (),
    elf_type: int = ET_EXEC,
    machine: int = EM_X86_64,
    interpreter: str | None = None,
    bits: int = 64,
    big_endian: bool = False,
) -> Path:
    """Write a minimal ELF file with the given sections.

    Args:
        path: Output file.
        needed: DT_NEEDED sonames, written to a .dynamic/.dynstr pair.
        symtab: Include an (empty) .symtab section.
        debug_sections: Names of .debug_* sections to include.
        elf_type: ELF e_type value.
        machine: ELF e_machine value.
        interpreter: Program interpreter, written as a PT_INTERP segment.
        bits: ELF class, 32 or 64.
        big_endian: Write big-endian headers.

    Returns:
        The written path.
    """
    order = ">" if big_endian else "<"
    fmt = _ELF_FORMATS[bits]
    ehsize = struct.calcsize(order + fmt["header"])
    shentsize = struct.calcsize(order + fmt["section"])
    dyn_size = struct.calcsize(order + fmt["dynamic"])

    # (name, type, data, link, entsize)
    sections: list[tuple[str, int, bytes, int, int]] = []

    if needed:
        dynstr = bytearray(b"\0")
        offsets = []
        for soname in needed:
            offsets.append(len(dynstr))
            dynstr += soname.encode() + b"\0"
        dynamic = b"".join(
            struct.pack(order + fmt["dynamic"], DT_NEEDED, off) for off in offsets
        )
        dynamic += struct.pack(order + fmt["dynamic"], DT_NULL, 0)
        sections.append((".dynstr", SHT_STRTAB, bytes(dynstr), 0, 0))
        # .dynstr is section 1 (after the null section)
        sections.append((".dynamic", SHT_DYNAMIC, dynamic, 1, dyn_size))

    shstrtab_index = len(sections) + 1 + (1 if symtab else 0) + len(debug_sections)

    if symtab:
        sections.append(
            (".symtab", SHT_SYMTAB, b"", shstrtab_index, 24 if bits == 64 else 16)
        )
    for name in debug_sections:
        sections.append((name, SHT_PROGBITS, b"\0" * 8, 0, 0))

    names = bytearray(b"\0")
    name_offsets = []
    for name, *_ in [*sections, (".shstrtab",)]:
        name_offsets.append(len(names))
        names += name.encode() + b"\0"
    sections.append((".shstrtab", SHT_STRTAB, bytes(names), 0, 0))

    body = bytearray(ehsize)
    phoff = phentsize = phnum = 0
    if interpreter is not None:
        interp = interpreter.encode() + b"\0"
        phoff, phentsize, phnum = ehsize, 56 if bits == 64 else 32, 1
        body += _interp_segment(order, bits, phoff + phentsize, len(interp))
        body += interp

    placed: list[tuple[int, int]] = []
    for _, _, data, _, _ in sections:
        _align(body)
        placed.append((len(body), len(data)))
        body += data
    _align(body)
    shoff = len(body)

    headers = bytearray(struct.pack(order + fmt["section"], *([0] * 10)))
    for (_name, sh_type, _data, link, entsize), name_off, (offset, size) in zip(
        sections, name_offsets, placed, strict=True
    ):
        headers += struct.pack(
            order + fmt["section"],
            name_off,
            sh_type,
            0,
            0,
            offset,
            size,
            link,
            0,
            1,
            entsize,
        )

    ident = (
        b"\x7fELF"
        + bytes([2 if bits == 64 else 1, 2 if big_endian else 1, 1, 0])
        + b"\0" * 8
    )
    header = struct.pack(
        order + fmt["header"],
        ident,
        elf_type,
        machine,
        1,
        0,
        phoff,
        shoff,
        0,
        ehsize,
        phentsize,
        phnum,
        shentsize,
        len(sections) + 1,
        len(sections),
    )
    body[:ehsize] = header

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(bytes(body + headers))
    return path


@pytest.fixture
def make_elf() -> Callable[..., Path]:
    """Factory writing minimal ELF executables."""
    return write_elf


@pytest.fixture
def recipe_data() -> dict[str, Any]:
    """Reference recipe document for tws-rust."""
    return {
        "name": "tws-rust",
        "binary": "tws-rust",
        "builder": {
            "toolchain_image": "rust:slim-buster",
            "packages": ["pkg-config", "libssl-dev"],
            "flags": {
                "strip_symbols": True,
                "static_crypto": True,
                "crypto_lib_dir": "/usr/lib/x86_64-linux-gnu",
                "crypto_include_dir": "/usr/include",
            },
        },
        "runtime": {
            "base_image": "debian:buster-slim",
        },
    }


@pytest.fixture
def source_dir(tmp_path: Path) -> Path:
    """A small Cargo project tree."""
    src = tmp_path / "tws-rust"
    (src / "src").mkdir(parents=True)
    (src / "Cargo.toml").write_text('[package]\nname = "tws-rust"\nversion = "0.1.0"\n')
    (src / "src" / "main.rs").write_text("fn main() {}\n")
    return src


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with all directories under tmp_path."""
    return Settings(
        work_dir=tmp_path / "work",
        artifacts_dir=tmp_path / "runs",
        db_url=f"sqlite:///{tmp_path / 'db.sqlite'}",
        lock_timeout=5,
    )


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine for testing."""
    engine = create_engine("sqlite:///:memory:", echo=False)
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def session_factory(engine):
    """Create a session factory for testing."""
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    """Create a session for testing."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


class FakeProducer:
    """Produces an ELF file locally instead of building a container stage."""

    def __init__(
        self,
        out_dir: Path,
        needed: tuple[str, ...] = (),
        symtab: bool = False,
        source_path: str | None = None,
        fail_with: FailureKind | None = None,
    ) -> None:
        self.out_dir = out_dir
        self.needed = needed
        self.symtab = symtab
        self.source_path = source_path
        self.fail_with = fail_with
        self.calls = 0

    def produce(self, environment: BuildEnvironment) -> CompiledArtifact:
        self.calls += 1
        if self.fail_with is not None:
            raise PipelineExecutionError(
                f"{self.fail_with.value} failed", kind=self.fail_with, exit_code=100
            )
        local_path = write_elf(
            self.out_dir / Path(environment.artifact_path).name,
            needed=self.needed,
            symtab=self.symtab,
        )
        return CompiledArtifact(
            source_path=self.source_path or environment.artifact_path,
            local_path=local_path,
            sha256=compute_file_hash(local_path),
            size_bytes=local_path.stat().st_size,
            inspection=inspect_artifact(
                local_path, crypto_libraries=environment.flags.crypto_libraries
            ),
        )


class FakeAssembler:
    """Assembles a RuntimeImage without an engine, reporting chosen facts."""

    def __init__(
        self,
        extra_files: tuple[str, ...] = (),
        command: tuple[str, ...] | None = None,
    ) -> None:
        self.extra_files = extra_files
        self.command = command
        self.calls = 0

    def assemble(self, stage: RuntimeStage, artifact: CompiledArtifact) -> RuntimeImage:
        self.calls += 1
        return RuntimeImage(
            base_image=stage.base_image,
            artifact=artifact,
            destination=stage.destination,
            entry_command=stage.entry_command,
            tag="isobuild/tws-rust:test",
            image_id="sha256:" + "ab" * 32,
            added_files=(stage.destination, *self.extra_files),
            declared_command=self.command or stage.entry_command,
        )


@pytest.fixture
def fake_producer(tmp_path: Path) -> Callable[..., FakeProducer]:
    """Factory for FakeProducer writing into tmp_path/produced."""

    def _make(**kwargs: Any) -> FakeProducer:
        return FakeProducer(tmp_path / "produced", **kwargs)

    return _make


@pytest.fixture
def fake_assembler() -> Callable[..., FakeAssembler]:
    """Factory for FakeAssembler."""
    return FakeAssembler
