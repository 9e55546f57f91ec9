"""Artifact inspection - read linkage and strip state from an ELF binary.

Responsibilities:
  - Validate that the artifact is an ELF executable.
  - Read architecture, interpreter and DT_NEEDED entries.
  - Detect a symbol table (.symtab) and .debug_* sections.
  - Decide the linkage mode against the cryptography library.

The binary's behavior is never examined; only its headers and sections.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

from elftools.common.exceptions import ELFError
from elftools.elf.dynamic import DynamicSection
from elftools.elf.elffile import ELFFile

from isobuild.types import LinkageMode

if TYPE_CHECKING:
    from isobuild.pipeline.stages import BuildFlags

logger = logging.getLogger(__name__)

EXECUTABLE_TYPES = ("ET_EXEC", "ET_DYN")


class InspectionError(Exception):
    """Raised when an artifact cannot be inspected."""

    def __init__(self, message: str, code: str = "inspection_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class ArtifactInspection:
    """Structural facts about a compiled artifact."""

    path: str
    elf_class: int
    machine: str
    endianness: str
    elf_type: str
    interpreter: str | None
    needed: tuple[str, ...]
    has_symtab: bool
    debug_sections: tuple[str, ...]
    crypto_libraries: tuple[str, ...] = ()
    crypto_needed: tuple[str, ...] = ()

    @property
    def linkage(self) -> LinkageMode:
        """Linkage against the cryptography library."""
        return LinkageMode.DYNAMIC if self.crypto_needed else LinkageMode.STATIC

    @property
    def stripped(self) -> bool:
        """True when neither a symbol table nor debug sections remain."""
        return not self.has_symtab and not self.debug_sections

    @property
    def fully_static(self) -> bool:
        """True when the binary has no interpreter and no dynamic deps."""
        return self.interpreter is None and not self.needed

    def to_dict(self) -> dict[str, object]:
        """Summarize for manifests and API responses."""
        return {
            "path": self.path,
            "elf_class": self.elf_class,
            "machine": self.machine,
            "endianness": self.endianness,
            "elf_type": self.elf_type,
            "interpreter": self.interpreter,
            "needed": list(self.needed),
            "has_symtab": self.has_symtab,
            "debug_sections": list(self.debug_sections),
            "crypto_needed": list(self.crypto_needed),
            "linkage": self.linkage.value,
            "stripped": self.stripped,
            "fully_static": self.fully_static,
        }


def matches_library(soname: str, library: str) -> bool:
    """Check whether a DT_NEEDED soname refers to a library.

    Args:
        soname: Entry such as ``libssl.so.1.1``.
        library: Library name without prefix, such as ``ssl``.

    Returns:
        True if the soname is ``lib<library>.so`` with any version suffix.
    """
    return re.match(rf"^lib{re.escape(library)}\.so(\.|$)", soname) is not None


def _enum_name(value: str | int, prefix: str) -> str:
    # pyelftools returns the raw integer for values it has no name for
    return value if isinstance(value, str) else f"{prefix}{value:#x}"


def _read_interpreter(elffile: ELFFile) -> str | None:
    for segment in elffile.iter_segments():
        if segment["p_type"] == "PT_INTERP":
            return segment.get_interp_name()
    return None


def _read_needed(elffile: ELFFile) -> list[str]:
    needed: list[str] = []
    for section in elffile.iter_sections():
        if isinstance(section, DynamicSection):
            needed.extend(tag.needed for tag in section.iter_tags("DT_NEEDED"))
    return needed


def inspect_artifact(
    path: Path,
    crypto_libraries: tuple[str, ...] | list[str] = ("ssl", "crypto"),
) -> ArtifactInspection:
    """Open an artifact as ELF and return its linkage facts.

    Args:
        path: Path to the executable.
        crypto_libraries: Library names that count as the cryptography
            dependency.

    Returns:
        ArtifactInspection for the file.

    Raises:
        InspectionError: If the file is missing or not an ELF executable.
    """
    if not path.is_file():
        raise InspectionError(f"Artifact not found: {path}", code="artifact_missing")

    with path.open("rb") as f:
        try:
            elffile = ELFFile(f)
            elf_type = _enum_name(elffile.header["e_type"], "ET_")
            if elf_type not in EXECUTABLE_TYPES:
                raise InspectionError(
                    f"ELF file is not an executable ({elf_type}): {path}",
                    code="not_executable",
                )

            machine = _enum_name(elffile.header["e_machine"], "EM_")
            section_names = [s.name for s in elffile.iter_sections()]
            has_symtab = elffile.get_section_by_name(".symtab") is not None
            needed = _read_needed(elffile)
            interpreter = _read_interpreter(elffile)
        except ELFError as e:
            raise InspectionError(
                f"Not a valid ELF binary: {path}: {e}", code="not_elf"
            ) from e

        inspection = ArtifactInspection(
            path=str(path),
            elf_class=elffile.elfclass,
            machine=machine,
            endianness="little" if elffile.little_endian else "big",
            elf_type=elf_type,
            interpreter=interpreter,
            needed=tuple(needed),
            has_symtab=has_symtab,
            debug_sections=tuple(n for n in section_names if n.startswith(".debug_")),
            crypto_libraries=tuple(crypto_libraries),
            crypto_needed=tuple(
                soname
                for soname in needed
                if any(matches_library(soname, lib) for lib in crypto_libraries)
            ),
        )

    logger.debug(
        "Inspected %s: machine=%s needed=%s symtab=%s",
        path,
        inspection.machine,
        list(inspection.needed),
        inspection.has_symtab,
    )
    return inspection


def check_invariants(inspection: ArtifactInspection, flags: BuildFlags) -> list[str]:
    """List the ways an artifact breaks the requested build flags.

    Args:
        inspection: Facts about the artifact.
        flags: Flags the artifact was built with.

    Returns:
        Human-readable violations; empty when all invariants hold.
    """
    violations: list[str] = []
    if flags.static_crypto and inspection.crypto_needed:
        violations.append(
            "cryptography library linked dynamically: "
            + ", ".join(inspection.crypto_needed)
        )
    if flags.strip_symbols:
        if inspection.has_symtab:
            violations.append("symbol table (.symtab) present")
        if inspection.debug_sections:
            violations.append(
                "debug sections present: " + ", ".join(inspection.debug_sections)
            )
    return violations


__all__ = [
    "ArtifactInspection",
    "InspectionError",
    "check_invariants",
    "inspect_artifact",
    "matches_library",
]
