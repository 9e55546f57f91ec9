"""Tests for shared types module."""

from isobuild.types import (
    ArtifactInfo,
    ArtifactKind,
    FailureKind,
    LinkageMode,
    PackageManager,
    PipelineState,
)


class TestEnums:
    """Test enum definitions."""

    def test_pipeline_state_values(self) -> None:
        """PipelineState should have expected values."""
        assert PipelineState.PENDING.value == "pending"
        assert PipelineState.BUILDING.value == "building"
        assert PipelineState.PACKAGED.value == "packaged"
        assert PipelineState.FAILED.value == "failed"

    def test_terminal_states(self) -> None:
        """Only packaged and failed are terminal."""
        assert PipelineState.PACKAGED.is_terminal
        assert PipelineState.FAILED.is_terminal
        assert not PipelineState.PENDING.is_terminal
        assert not PipelineState.BUILDING.is_terminal

    def test_failure_kind_values(self) -> None:
        """FailureKind should cover the failure taxonomy."""
        assert {k.value for k in FailureKind} == {
            "environment_provisioning",
            "compilation",
            "artifact_handoff",
            "invariant",
            "execution_error",
            "build_timeout",
        }

    def test_linkage_and_package_manager(self) -> None:
        """LinkageMode and PackageManager are string enums."""
        assert LinkageMode("static") is LinkageMode.STATIC
        assert LinkageMode.DYNAMIC == "dynamic"
        assert PackageManager("apk") is PackageManager.APK

    def test_artifact_kind_values(self) -> None:
        """ArtifactKind should have expected values."""
        assert [k.value for k in ArtifactKind] == [
            "executable",
            "dockerfile",
            "manifest",
            "log",
        ]


class TestDataclasses:
    """Test dataclass definitions."""

    def test_artifact_info(self) -> None:
        """ArtifactInfo carries executable properties when set."""
        info = ArtifactInfo(
            filename="tws-rust",
            relative_path="tws-rust",
            size_bytes=10,
            sha256="0" * 64,
            kind="executable",
            linkage="static",
            stripped=True,
        )
        assert info.linkage == "static"
        assert info.stripped is True
