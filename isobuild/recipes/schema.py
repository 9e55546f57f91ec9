"""Pydantic models for pipeline recipe validation.

A recipe is the declarative input to the pipeline: which toolchain and
native packages make up the build environment, which flags control
linking and stripping, where the compiled artifact lands, and how the
runtime image carries and starts it.
"""

import posixpath
import re
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from isobuild.types import PackageManager

RECIPE_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.\-]+$")
ENV_NAME_PATTERN = re.compile(r"^[A-Z_][A-Z0-9_]*$")
BINARY_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.+\-]+$")

# Directories on the default PATH of Debian/Alpine base images
DEFAULT_PATH_DIRS = (
    "/usr/local/sbin",
    "/usr/local/bin",
    "/usr/sbin",
    "/usr/bin",
    "/sbin",
    "/bin",
)


def _validate_absolute(value: str, field_name: str) -> str:
    if not value.startswith("/"):
        raise ValueError(f"{field_name} must be an absolute path, got '{value}'")
    if value.endswith("/") or posixpath.normpath(value) != value:
        raise ValueError(f"{field_name} must be a normalized file path, got '{value}'")
    return value


class BuildFlagsSchema(BaseModel):
    """Compiler/linker flags for the builder stage.

    Attributes:
        strip_symbols: Strip symbol and debug information at link time.
        static_crypto: Statically link the cryptography library.
        crypto_env_prefix: Prefix of the cryptography build variables
            (``OPENSSL`` renders ``OPENSSL_STATIC``, ``OPENSSL_LIB_DIR``...).
        crypto_lib_dir: Directory holding the static cryptography libraries.
        crypto_include_dir: Directory holding the cryptography headers.
        crypto_libraries: Library names (without ``lib`` prefix) that must
            not remain as dynamic dependencies.
        linker_args: Extra ``-C link-arg=`` values.
        extra_env: Additional environment variables for the build command.
    """

    model_config = ConfigDict(extra="forbid")

    strip_symbols: bool = Field(default=True)
    static_crypto: bool = Field(default=False)
    crypto_env_prefix: str = Field(default="OPENSSL")
    crypto_lib_dir: str | None = Field(default=None)
    crypto_include_dir: str | None = Field(default=None)
    crypto_libraries: list[str] = Field(default_factory=lambda: ["ssl", "crypto"])
    linker_args: list[str] = Field(default_factory=list)
    extra_env: dict[str, str] = Field(default_factory=dict)

    @field_validator("crypto_env_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        """Validate the prefix is usable in an environment variable name."""
        if not ENV_NAME_PATTERN.match(v):
            raise ValueError(f"crypto_env_prefix must match {ENV_NAME_PATTERN.pattern}")
        return v

    @field_validator("crypto_lib_dir", "crypto_include_dir")
    @classmethod
    def validate_dirs(cls, v: str | None) -> str | None:
        """Validate search paths are absolute."""
        if v is not None and not v.startswith("/"):
            raise ValueError(f"search path must be absolute, got '{v}'")
        return v

    @field_validator("crypto_libraries", "linker_args")
    @classmethod
    def validate_tokens(cls, v: list[str]) -> list[str]:
        """Validate list items are non-empty and free of whitespace."""
        for item in v:
            if not item or any(c.isspace() for c in item):
                raise ValueError(
                    f"list items must be non-empty without whitespace, got '{item}'"
                )
        return v

    @field_validator("extra_env")
    @classmethod
    def validate_env(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate environment variable names."""
        for name in v:
            if not ENV_NAME_PATTERN.match(name):
                raise ValueError(f"invalid environment variable name '{name}'")
        return v

    @model_validator(mode="after")
    def validate_static_paths(self) -> "BuildFlagsSchema":
        """Static crypto linkage needs the library search path."""
        if self.static_crypto and not self.crypto_lib_dir:
            raise ValueError("static_crypto requires crypto_lib_dir")
        reserved = {
            "RUSTFLAGS",
            f"{self.crypto_env_prefix}_STATIC",
            f"{self.crypto_env_prefix}_LIB_DIR",
            f"{self.crypto_env_prefix}_INCLUDE_DIR",
        }
        clash = sorted(reserved & set(self.extra_env))
        if clash:
            raise ValueError(f"extra_env must not override {', '.join(clash)}")
        return self


class BuilderSchema(BaseModel):
    """Builder stage definition.

    Attributes:
        toolchain_image: Toolchain base image (pin with a digest for
            reproducible builds).
        package_manager: Package manager of the toolchain image.
        packages: Native development packages to install.
        workdir: Directory the source tree is copied into.
        build_command: Command producing the artifact, run in ``workdir``.
        artifact_path: Absolute path of the produced executable.
        flags: Linking and stripping flags.
    """

    model_config = ConfigDict(extra="forbid")

    toolchain_image: Annotated[str, Field(min_length=1, max_length=500)]
    package_manager: PackageManager = Field(default=PackageManager.APT)
    packages: list[str] = Field(default_factory=list)
    workdir: str = Field(default="/src")
    build_command: list[str] = Field(
        default_factory=lambda: ["cargo", "build", "--release"], min_length=1
    )
    artifact_path: str | None = Field(default=None)
    flags: BuildFlagsSchema = Field(default_factory=BuildFlagsSchema)

    @field_validator("packages")
    @classmethod
    def validate_packages(cls, v: list[str]) -> list[str]:
        """Validate package names."""
        for item in v:
            if not item or not item.strip():
                raise ValueError("package names must be non-empty strings")
            if any(c.isspace() for c in item):
                raise ValueError(f"package names must not contain whitespace, got '{item}'")
        if len(v) != len(set(v)):
            raise ValueError("packages must not contain duplicates")
        return v

    @field_validator("workdir")
    @classmethod
    def validate_workdir(cls, v: str) -> str:
        """Validate workdir is absolute."""
        if not v.startswith("/"):
            raise ValueError(f"workdir must be an absolute path, got '{v}'")
        return v

    @field_validator("artifact_path")
    @classmethod
    def validate_artifact_path(cls, v: str | None) -> str | None:
        """Validate artifact path is absolute."""
        if v is None:
            return v
        return _validate_absolute(v, "artifact_path")


class RuntimeSchema(BaseModel):
    """Runtime stage definition.

    Attributes:
        base_image: Minimal base image for the delivered image.
        artifact_destination: Absolute path the artifact is copied to.
        entry_command: Default process, run with no extra arguments.
    """

    model_config = ConfigDict(extra="forbid")

    base_image: Annotated[str, Field(min_length=1, max_length=500)]
    artifact_destination: str | None = Field(default=None)
    entry_command: list[str] | None = Field(default=None)

    @field_validator("artifact_destination")
    @classmethod
    def validate_destination(cls, v: str | None) -> str | None:
        """Validate destination is absolute."""
        if v is None:
            return v
        return _validate_absolute(v, "artifact_destination")

    @field_validator("entry_command")
    @classmethod
    def validate_entry_command(cls, v: list[str] | None) -> list[str] | None:
        """Validate the entry command is exactly one executable."""
        if v is None:
            return v
        if not v or not v[0]:
            raise ValueError("entry_command must name an executable")
        if len(v) != 1:
            raise ValueError(
                "entry_command runs the artifact with no arguments, "
                f"got {len(v) - 1} argument(s)"
            )
        return v


class RecipeSchema(BaseModel):
    """Complete pipeline recipe.

    Derived defaults are filled in by ``resolved()``; the raw schema keeps
    unset fields as None so exports round-trip what the author wrote.
    """

    model_config = ConfigDict(extra="forbid")

    name: Annotated[str, Field(min_length=1, max_length=255)]
    binary: Annotated[str, Field(min_length=1, max_length=255)]
    description: str | None = Field(default=None)
    builder: BuilderSchema
    runtime: RuntimeSchema
    notes: str | None = Field(default=None)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate name matches safe pattern."""
        if not RECIPE_NAME_PATTERN.match(v):
            raise ValueError(
                f"name must match pattern {RECIPE_NAME_PATTERN.pattern}, got '{v}'"
            )
        return v

    @field_validator("binary")
    @classmethod
    def validate_binary(cls, v: str) -> str:
        """Validate binary is a bare file name."""
        if not BINARY_NAME_PATTERN.match(v):
            raise ValueError(f"binary must be a bare file name, got '{v}'")
        return v

    @property
    def artifact_path(self) -> str:
        """Path of the compiled artifact inside the builder stage."""
        if self.builder.artifact_path:
            return self.builder.artifact_path
        return posixpath.join(self.builder.workdir, "target", "release", self.binary)

    @property
    def artifact_destination(self) -> str:
        """Path of the artifact inside the runtime image."""
        if self.runtime.artifact_destination:
            return self.runtime.artifact_destination
        return posixpath.join("/usr/local/bin", self.binary)

    @property
    def entry_command(self) -> list[str]:
        """Declared entry command of the runtime image."""
        if self.runtime.entry_command:
            return list(self.runtime.entry_command)
        destination = self.artifact_destination
        if posixpath.dirname(destination) in DEFAULT_PATH_DIRS:
            return [posixpath.basename(destination)]
        return [destination]

    @model_validator(mode="after")
    def validate_entry_matches_destination(self) -> "RecipeSchema":
        """The entry command must start the copied artifact."""
        destination = self.artifact_destination
        executable = self.entry_command[0]
        if executable == destination:
            return self
        if (
            posixpath.dirname(destination) in DEFAULT_PATH_DIRS
            and executable == posixpath.basename(destination)
        ):
            return self
        raise ValueError(
            f"entry_command '{executable}' does not start the artifact "
            f"copied to '{destination}'"
        )

    def resolved(self) -> "RecipeSchema":
        """Return a copy with all derived defaults filled in."""
        data = self.model_dump()
        data["builder"]["artifact_path"] = self.artifact_path
        data["runtime"]["artifact_destination"] = self.artifact_destination
        data["runtime"]["entry_command"] = self.entry_command
        return RecipeSchema.model_validate(data)


__all__ = [
    "DEFAULT_PATH_DIRS",
    "BuildFlagsSchema",
    "BuilderSchema",
    "RecipeSchema",
    "RuntimeSchema",
]
