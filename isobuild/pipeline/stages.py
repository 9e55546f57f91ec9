"""Stage model for the two-stage build pipeline.

The pipeline is a directed graph with two nodes and one edge:

    BuilderStage --CompiledArtifact--> RuntimeStage

Every value flowing through it is immutable. The builder stage consumes a
BuildEnvironment and hands exactly one CompiledArtifact to the runtime
stage, which turns it into a RuntimeImage. The service binary itself is
never looked at beyond its path and linkage properties: producing and
assembling are delegated to capability objects (ArtifactProducer,
ImageAssembler) so the container engine can be swapped out in tests.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from isobuild.pipeline.inspection import ArtifactInspection, check_invariants
from isobuild.types import FailureKind, LinkageMode, PackageManager, PipelineState

if TYPE_CHECKING:
    from isobuild.recipes.schema import RecipeSchema

logger = logging.getLogger(__name__)

STRIP_LINK_ARG = "-s"


class PipelineExecutionError(Exception):
    """Raised when a pipeline stage fails.

    Attributes:
        kind: Failure classification.
        code: Stable error code (the failure kind value).
        exit_code: Exit code of the failing engine command, if any.
        log_path: Build log with the full engine output, if any.
    """

    def __init__(
        self,
        message: str,
        kind: FailureKind,
        exit_code: int | None = None,
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = kind.value
        self.exit_code = exit_code
        self.log_path = log_path


@dataclass(frozen=True)
class BuildFlags:
    """Flags controlling how the artifact is linked."""

    strip_symbols: bool = True
    static_crypto: bool = False
    crypto_env_prefix: str = "OPENSSL"
    crypto_lib_dir: str | None = None
    crypto_include_dir: str | None = None
    crypto_libraries: tuple[str, ...] = ("ssl", "crypto")
    linker_args: tuple[str, ...] = ()
    extra_env: tuple[tuple[str, str], ...] = ()

    def rustflags(self) -> str | None:
        """Compose the RUSTFLAGS value, or None when nothing is passed."""
        args = list(self.linker_args)
        if self.strip_symbols and STRIP_LINK_ARG not in args:
            args.append(STRIP_LINK_ARG)
        if not args:
            return None
        return " ".join(f"-C link-arg={arg}" for arg in args)

    def to_env(self) -> tuple[tuple[str, str], ...]:
        """Compose the ordered build environment variables."""
        env: list[tuple[str, str]] = []
        rustflags = self.rustflags()
        if rustflags:
            env.append(("RUSTFLAGS", rustflags))
        if self.static_crypto:
            prefix = self.crypto_env_prefix
            env.append((f"{prefix}_STATIC", "yes"))
            if self.crypto_lib_dir:
                env.append((f"{prefix}_LIB_DIR", self.crypto_lib_dir))
            if self.crypto_include_dir:
                env.append((f"{prefix}_INCLUDE_DIR", self.crypto_include_dir))
        env.extend(sorted(self.extra_env))
        return tuple(env)


@dataclass(frozen=True)
class BuildEnvironment:
    """Immutable description of the builder stage's environment."""

    toolchain_image: str
    packages: tuple[str, ...]
    build_command: tuple[str, ...]
    artifact_path: str
    workdir: str = "/src"
    package_manager: PackageManager = PackageManager.APT
    flags: BuildFlags = field(default_factory=BuildFlags)

    @property
    def env(self) -> tuple[tuple[str, str], ...]:
        """Environment variables prefixed to the build command."""
        return self.flags.to_env()


@dataclass(frozen=True)
class CompiledArtifact:
    """The single executable produced by the builder stage.

    Attributes:
        source_path: Path of the executable inside the builder stage.
        local_path: Host copy extracted for inspection.
        sha256: SHA-256 of the executable.
        size_bytes: File size.
        inspection: ELF facts (architecture, linkage, strip state).
    """

    source_path: str
    local_path: Path
    sha256: str
    size_bytes: int
    inspection: ArtifactInspection | None = None

    @property
    def architecture(self) -> str | None:
        """ELF machine, e.g. ``EM_X86_64``; None before inspection."""
        return self.inspection.machine if self.inspection else None

    @property
    def linkage(self) -> LinkageMode | None:
        """Linkage against the cryptography library; None before inspection."""
        return self.inspection.linkage if self.inspection else None

    @property
    def stripped(self) -> bool | None:
        """True when no symbol table or debug sections remain."""
        return self.inspection.stripped if self.inspection else None


@dataclass(frozen=True)
class RuntimeImage:
    """The delivered image: base image plus the one copied artifact."""

    base_image: str
    artifact: CompiledArtifact
    destination: str
    entry_command: tuple[str, ...]
    tag: str | None = None
    image_id: str | None = None
    added_files: tuple[str, ...] | None = None
    declared_command: tuple[str, ...] | None = None


class ArtifactProducer(Protocol):
    """Produces an executable at a known path from a build environment."""

    def produce(self, environment: BuildEnvironment) -> CompiledArtifact:
        """Build and return the compiled artifact."""
        ...


class ImageAssembler(Protocol):
    """Assembles the runtime image around a compiled artifact."""

    def assemble(self, stage: RuntimeStage, artifact: CompiledArtifact) -> RuntimeImage:
        """Build and return the runtime image."""
        ...


@dataclass(frozen=True)
class BuilderStage:
    """Builder stage: environment in, one verified artifact out."""

    environment: BuildEnvironment
    name: str = "builder"

    def run(self, producer: ArtifactProducer) -> CompiledArtifact:
        """Produce the artifact and enforce the linkage invariants.

        Raises:
            PipelineExecutionError: If production fails, the artifact lands
                elsewhere than declared, or the invariants do not hold.
        """
        artifact = producer.produce(self.environment)

        if artifact.source_path != self.environment.artifact_path:
            raise PipelineExecutionError(
                f"Artifact produced at {artifact.source_path}, "
                f"expected {self.environment.artifact_path}",
                kind=FailureKind.ARTIFACT_HANDOFF,
            )

        if artifact.inspection is not None:
            violations = check_invariants(artifact.inspection, self.environment.flags)
            if violations:
                raise PipelineExecutionError(
                    "Artifact violates build invariants: " + "; ".join(violations),
                    kind=FailureKind.INVARIANT,
                )

        logger.info(
            "Builder stage produced %s (%d bytes, linkage=%s, stripped=%s)",
            artifact.source_path,
            artifact.size_bytes,
            artifact.linkage.value if artifact.linkage else "unknown",
            artifact.stripped,
        )
        return artifact


@dataclass(frozen=True)
class RuntimeStage:
    """Runtime stage: base image plus the single copied artifact."""

    base_image: str
    destination: str
    entry_command: tuple[str, ...]
    name: str = "runtime"

    def run(self, assembler: ImageAssembler, artifact: CompiledArtifact) -> RuntimeImage:
        """Assemble the image and enforce its contents and entry command.

        Raises:
            PipelineExecutionError: If assembly fails, the image carries
                anything besides the artifact, or the declared command
                differs from the entry command.
        """
        image = assembler.assemble(self, artifact)

        if image.added_files is not None and image.added_files != (
            self.destination,
        ):
            raise PipelineExecutionError(
                f"Runtime image adds {list(image.added_files)}, "
                f"expected only {self.destination}",
                kind=FailureKind.INVARIANT,
            )
        if (
            image.declared_command is not None
            and image.declared_command != self.entry_command
        ):
            raise PipelineExecutionError(
                f"Runtime image command {list(image.declared_command)} does not "
                f"match entry command {list(self.entry_command)}",
                kind=FailureKind.INVARIANT,
            )

        logger.info("Runtime stage assembled %s", image.tag or image.image_id)
        return image


@dataclass(frozen=True)
class Pipeline:
    """Two-node pipeline with a single artifact-typed edge."""

    builder: BuilderStage
    runtime: RuntimeStage

    @classmethod
    def from_recipe(cls, recipe: RecipeSchema) -> Pipeline:
        """Build the pipeline graph from a validated recipe."""
        flags = recipe.builder.flags
        environment = BuildEnvironment(
            toolchain_image=recipe.builder.toolchain_image,
            packages=tuple(recipe.builder.packages),
            build_command=tuple(recipe.builder.build_command),
            artifact_path=recipe.artifact_path,
            workdir=recipe.builder.workdir,
            package_manager=recipe.builder.package_manager,
            flags=BuildFlags(
                strip_symbols=flags.strip_symbols,
                static_crypto=flags.static_crypto,
                crypto_env_prefix=flags.crypto_env_prefix,
                crypto_lib_dir=flags.crypto_lib_dir,
                crypto_include_dir=flags.crypto_include_dir,
                crypto_libraries=tuple(flags.crypto_libraries),
                linker_args=tuple(flags.linker_args),
                extra_env=tuple(sorted(flags.extra_env.items())),
            ),
        )
        runtime = RuntimeStage(
            base_image=recipe.runtime.base_image,
            destination=recipe.artifact_destination,
            entry_command=tuple(recipe.entry_command),
        )
        return cls(builder=BuilderStage(environment), runtime=runtime)

    def run(
        self,
        producer: ArtifactProducer,
        assembler: ImageAssembler,
        on_transition: Callable[[PipelineState], None] | None = None,
    ) -> RuntimeImage:
        """Run the builder stage, then the runtime stage.

        The runtime stage is never started when the builder stage fails;
        the error propagates and no image is returned.

        Args:
            producer: Capability producing the compiled artifact.
            assembler: Capability assembling the runtime image.
            on_transition: Optional callback receiving each state change.

        Returns:
            The assembled RuntimeImage.
        """
        if on_transition:
            on_transition(PipelineState.BUILDING)
        artifact = self.builder.run(producer)
        image = self.runtime.run(assembler, artifact)
        if on_transition:
            on_transition(PipelineState.PACKAGED)
        return image


__all__ = [
    "ArtifactProducer",
    "BuildEnvironment",
    "BuildFlags",
    "BuilderStage",
    "CompiledArtifact",
    "ImageAssembler",
    "Pipeline",
    "PipelineExecutionError",
    "RuntimeImage",
    "RuntimeStage",
]
