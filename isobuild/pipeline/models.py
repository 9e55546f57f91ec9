"""Pipeline run ORM models.

This module defines the PipelineRun and Artifact models for storing
pipeline executions and their output files in the database.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from isobuild.db import Base
from isobuild.types import PipelineState


class PipelineRunStateError(Exception):
    """Raised on a state transition out of a terminal state."""

    def __init__(self, message: str, code: str = "invalid_transition") -> None:
        super().__init__(message)
        self.code = code


class PipelineRun(Base):
    """ORM model for pipeline runs.

    A PipelineRun captures one execution of a recipe: the normalized
    inputs and cache key, the state reached, the failure kind if any, and
    the runtime image tag once packaged.

    Attributes:
        id: Primary key.
        recipe_name: Name of the recipe that was run.
        state: Run state (pending, building, packaged, failed).
        requested_at: Timestamp when the run was requested.
        started_at: Timestamp when building started.
        finished_at: Timestamp when the run reached a terminal state.
        recipe_snapshot: JSON representation of all pipeline inputs.
        cache_key: Hash of the inputs for cache lookup.
        source_dir: Source tree the run was built from.
        run_dir: Directory holding the run's outputs.
        log_path: Path to the build log.
        image_tag: Runtime image tag (set only when packaged).
        image_id: Runtime image ID (set only when packaged).
        failure_kind: Failure classification if the run failed.
        error_message: Error message if the run failed.
        inspection: Artifact inspection summary.
        is_cache_hit: Whether this run reused an earlier packaged run.
    """

    __tablename__ = "pipeline_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    recipe_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    # State and timing
    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PipelineState.PENDING.value, index=True
    )
    requested_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Cache key and input snapshot
    recipe_snapshot: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True
    )
    cache_key: Mapped[str] = mapped_column(String(128), nullable=False, index=True)

    # Paths
    source_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    run_dir: Mapped[str | None] = mapped_column(String(500), nullable=True)
    log_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    # Output image
    image_tag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    image_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    # Error tracking
    failure_kind: Mapped[str | None] = mapped_column(String(50), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    inspection: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    is_cache_hit: Mapped[bool] = mapped_column(nullable=False, default=False)

    artifacts: Mapped[list["Artifact"]] = relationship(
        "Artifact", back_populates="run", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_pipeline_runs_recipe_state", "recipe_name", "state"),)

    def __repr__(self) -> str:
        """Return string representation of PipelineRun."""
        return (
            f"<PipelineRun(id={self.id}, recipe='{self.recipe_name}', "
            f"state='{self.state}', cache_key='{self.cache_key[:16]}...')>"
        )

    def _check_not_terminal(self, target: PipelineState) -> None:
        if self.state and PipelineState(self.state).is_terminal:
            raise PipelineRunStateError(
                f"Run {self.id} is {self.state}; cannot move to {target.value}"
            )

    def mark_building(self) -> None:
        """Mark this run as building."""
        self._check_not_terminal(PipelineState.BUILDING)
        self.state = PipelineState.BUILDING.value
        self.started_at = datetime.now()

    def mark_packaged(self, image_tag: str, image_id: str | None = None) -> None:
        """Mark this run as packaged and record the image.

        Args:
            image_tag: Tag of the runtime image.
            image_id: Optional image ID.
        """
        if self.state != PipelineState.BUILDING.value:
            raise PipelineRunStateError(
                f"Run {self.id} is {self.state}; only building runs can be packaged"
            )
        self.state = PipelineState.PACKAGED.value
        self.finished_at = datetime.now()
        self.image_tag = image_tag
        self.image_id = image_id

    def mark_failed(
        self, failure_kind: str | None = None, message: str | None = None
    ) -> None:
        """Mark this run as failed.

        No image tag is kept for a failed run.

        Args:
            failure_kind: Failure classification.
            message: Error message details.
        """
        self._check_not_terminal(PipelineState.FAILED)
        self.state = PipelineState.FAILED.value
        self.finished_at = datetime.now()
        self.image_tag = None
        self.image_id = None
        if failure_kind:
            self.failure_kind = failure_kind
        if message:
            self.error_message = message

    def is_packaged(self) -> bool:
        """Check if this run produced a runtime image."""
        return self.state == PipelineState.PACKAGED.value


class Artifact(Base):
    """ORM model for run output files.

    Attributes:
        id: Primary key.
        run_id: Foreign key to PipelineRun.
        kind: Kind of file (executable, dockerfile, manifest, log).
        relative_path: Path relative to the run directory.
        absolute_path: Full filesystem path.
        filename: File name.
        size_bytes: File size in bytes.
        sha256: SHA-256 hash of the file.
        linkage: Crypto library linkage (executables only).
        stripped: Whether symbols were stripped (executables only).
    """

    __tablename__ = "artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("pipeline_runs.id"), nullable=False, index=True
    )

    kind: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)

    # Paths
    relative_path: Mapped[str] = mapped_column(String(500), nullable=False)
    absolute_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)

    # File metadata
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)

    # Executable properties
    linkage: Mapped[str | None] = mapped_column(String(20), nullable=True)
    stripped: Mapped[bool | None] = mapped_column(nullable=True)

    run: Mapped["PipelineRun"] = relationship("PipelineRun", back_populates="artifacts")

    def __repr__(self) -> str:
        """Return string representation of Artifact."""
        return (
            f"<Artifact(id={self.id}, filename='{self.filename}', "
            f"kind='{self.kind}', size={self.size_bytes})>"
        )


__all__ = ["Artifact", "PipelineRun", "PipelineRunStateError"]
