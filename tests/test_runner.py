"""Tests for the container engine runner.

The engine is never invoked; subprocess.run is replaced by a fake engine
that performs each command's side effect (image ID files, copied
artifacts, saved archives).
"""

import io
import json
import subprocess
import tarfile
from pathlib import Path
from unittest.mock import patch

import pytest

from isobuild.pipeline.runner import (
    DockerArtifactProducer,
    DockerImageAssembler,
    compose_engine_build_command,
    extract_artifact,
    inspect_image_config,
    run_logged,
    run_stage_build,
)
from isobuild.pipeline.stages import (
    BuildEnvironment,
    BuildFlags,
    PipelineExecutionError,
    RuntimeStage,
)
from isobuild.types import FailureKind

ARTIFACT_PATH = "/src/target/release/tws-rust"
DESTINATION = "/usr/local/bin/tws-rust"


def _tar_bytes(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as archive:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            archive.addfile(info, io.BytesIO(data))
    return buffer.getvalue()


class FakeEngine:
    """Stands in for the docker CLI behind subprocess.run."""

    def __init__(
        self,
        make_elf,
        fail_target: str | None = None,
        layer_files: tuple[str, ...] = ("usr/local/bin/tws-rust",),
        cmd: list[str] | None = None,
        elf_kwargs: dict | None = None,
    ) -> None:
        self.make_elf = make_elf
        self.fail_target = fail_target
        self.layer_files = layer_files
        self.cmd = cmd if cmd is not None else ["tws-rust"]
        self.elf_kwargs = elf_kwargs or {}
        self.commands: list[list[str]] = []

    def __call__(self, cmd, **kwargs):
        self.commands.append(cmd)
        action = cmd[1]
        stdout = ""
        returncode = 0

        if action == "build":
            target = cmd[cmd.index("--target") + 1]
            if target == self.fail_target:
                returncode = 1
            elif "--iidfile" in cmd:
                Path(cmd[cmd.index("--iidfile") + 1]).write_text(f"sha256:{target}\n")
        elif action == "create":
            stdout = "c0ffee\n"
        elif action == "cp":
            self.make_elf(Path(cmd[3]), **self.elf_kwargs)
        elif action == "image":
            stdout = json.dumps({"Cmd": self.cmd})
        elif action == "save":
            layer = _tar_bytes({name: b"\x7fELF" for name in self.layer_files})
            manifest = [{"Config": "config.json", "Layers": ["top/layer.tar"]}]
            Path(cmd[3]).write_bytes(
                _tar_bytes(
                    {
                        "top/layer.tar": layer,
                        "config.json": json.dumps({"config": {"Cmd": self.cmd}}).encode(),
                        "manifest.json": json.dumps(manifest).encode(),
                    }
                )
            )

        log_file = kwargs.get("stdout")
        if hasattr(log_file, "write"):
            log_file.write(f"{action} output\n")
        return subprocess.CompletedProcess(cmd, returncode, stdout=stdout, stderr="")


def _environment() -> BuildEnvironment:
    return BuildEnvironment(
        toolchain_image="rust:slim-buster",
        packages=("pkg-config", "libssl-dev"),
        build_command=("cargo", "build", "--release"),
        artifact_path=ARTIFACT_PATH,
        flags=BuildFlags(static_crypto=True, crypto_lib_dir="/usr/lib"),
    )


class TestComposeEngineBuildCommand:
    """Tests for compose_engine_build_command."""

    def test_minimal(self, tmp_path: Path) -> None:
        """Stage target, Dockerfile and context are passed."""
        cmd = compose_engine_build_command(
            "docker", tmp_path, tmp_path / "Dockerfile", "builder"
        )
        assert cmd == [
            "docker",
            "build",
            "--file",
            str(tmp_path / "Dockerfile"),
            "--target",
            "builder",
            str(tmp_path),
        ]

    def test_tag_and_iidfile(self, tmp_path: Path) -> None:
        """Tag and image ID file are added before the context."""
        cmd = compose_engine_build_command(
            "podman",
            tmp_path,
            tmp_path / "Dockerfile",
            "runtime",
            tag="isobuild/tws-rust:1",
            iidfile=tmp_path / "runtime.iid",
        )
        assert cmd[0] == "podman"
        assert cmd[cmd.index("--tag") + 1] == "isobuild/tws-rust:1"
        assert cmd[cmd.index("--iidfile") + 1] == str(tmp_path / "runtime.iid")
        assert cmd[-1] == str(tmp_path)


class TestRunLogged:
    """Tests for run_logged."""

    def test_success_writes_log(self, tmp_path: Path) -> None:
        """Headers, output and exit code are appended to the log."""
        log = tmp_path / "logs" / "build.log"
        with patch(
            "isobuild.pipeline.runner.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0),
        ):
            run_logged(["docker", "version"], log, kind=FailureKind.COMPILATION)

        content = log.read_text()
        assert "# Command: docker version" in content
        assert "# Exit code: 0" in content

    def test_capture(self, tmp_path: Path) -> None:
        """Captured stdout is returned and logged."""
        log = tmp_path / "build.log"
        with patch(
            "isobuild.pipeline.runner.subprocess.run",
            return_value=subprocess.CompletedProcess([], 0, stdout="abc\n", stderr=""),
        ):
            output = run_logged(
                ["docker", "create", "img"],
                log,
                kind=FailureKind.EXECUTION_ERROR,
                capture=True,
            )
        assert output == "abc\n"
        assert "abc" in log.read_text()

    def test_nonzero_exit_uses_kind(self, tmp_path: Path) -> None:
        """A failing command is attributed to the given failure kind."""
        log = tmp_path / "build.log"
        with (
            patch(
                "isobuild.pipeline.runner.subprocess.run",
                return_value=subprocess.CompletedProcess([], 101),
            ),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            run_logged(["docker", "build"], log, kind=FailureKind.COMPILATION)

        assert exc_info.value.kind == FailureKind.COMPILATION
        assert exc_info.value.exit_code == 101
        assert exc_info.value.log_path == log
        assert "# Exit code: 101" in log.read_text()

    def test_timeout(self, tmp_path: Path) -> None:
        """A timeout is reported as build_timeout."""
        log = tmp_path / "build.log"
        with (
            patch(
                "isobuild.pipeline.runner.subprocess.run",
                side_effect=subprocess.TimeoutExpired(["docker"], 5),
            ),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            run_logged(["docker", "build"], log, kind=FailureKind.COMPILATION, timeout=5)

        assert exc_info.value.code == "build_timeout"
        assert "# TIMEOUT after 5 seconds" in log.read_text()

    def test_missing_engine(self, tmp_path: Path) -> None:
        """A missing executable is reported as execution_error."""
        with (
            patch(
                "isobuild.pipeline.runner.subprocess.run",
                side_effect=FileNotFoundError("docker"),
            ),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            run_logged(["docker", "build"], tmp_path / "b.log", kind=FailureKind.COMPILATION)
        assert exc_info.value.kind == FailureKind.EXECUTION_ERROR


class TestStageAttribution:
    """Failures are attributed to the stage that failed."""

    @pytest.mark.parametrize(
        ("target", "kind"),
        [
            ("provision", FailureKind.ENVIRONMENT_PROVISIONING),
            ("builder", FailureKind.COMPILATION),
            ("runtime", FailureKind.ARTIFACT_HANDOFF),
        ],
    )
    def test_stage_failure_kind(
        self, make_elf, tmp_path: Path, target: str, kind: FailureKind
    ) -> None:
        """Each named stage maps to its failure kind."""
        engine = FakeEngine(make_elf, fail_target=target)
        with (
            patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            run_stage_build(
                "docker", tmp_path, tmp_path / "Dockerfile", target, tmp_path / "b.log"
            )
        assert exc_info.value.kind == kind

    def test_iidfile_read(self, make_elf, tmp_path: Path) -> None:
        """The image ID is read back from the iidfile."""
        engine = FakeEngine(make_elf)
        with patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine):
            image_id = run_stage_build(
                "docker",
                tmp_path,
                tmp_path / "Dockerfile",
                "builder",
                tmp_path / "b.log",
                iidfile=tmp_path / "builder.iid",
            )
        assert image_id == "sha256:builder"


class TestExtractArtifact:
    """Tests for extract_artifact."""

    def test_extract(self, make_elf, tmp_path: Path) -> None:
        """The container is created, copied from, and removed."""
        engine = FakeEngine(make_elf)
        dest = tmp_path / "out" / "tws-rust"
        with patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine):
            path = extract_artifact(
                "docker", "sha256:builder", ARTIFACT_PATH, dest, tmp_path / "b.log"
            )

        assert path == dest
        assert dest.is_file()
        actions = [c[1] for c in engine.commands]
        assert actions == ["create", "cp", "rm"]
        assert engine.commands[1][2] == f"c0ffee:{ARTIFACT_PATH}"

    def test_copy_failure_is_handoff(self, make_elf, tmp_path: Path) -> None:
        """A failing copy is an artifact handoff failure; the container is removed."""
        engine = FakeEngine(make_elf)

        def failing_cp(cmd, **kwargs):
            if cmd[1] == "cp":
                engine.commands.append(cmd)
                return subprocess.CompletedProcess(cmd, 1, stdout="", stderr="")
            return engine(cmd, **kwargs)

        with (
            patch("isobuild.pipeline.runner.subprocess.run", side_effect=failing_cp),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            extract_artifact(
                "docker", "img", ARTIFACT_PATH, tmp_path / "tws-rust", tmp_path / "b.log"
            )

        assert exc_info.value.kind == FailureKind.ARTIFACT_HANDOFF
        assert engine.commands[-1][1] == "rm"


class TestInspectImageConfig:
    """Tests for inspect_image_config."""

    def test_bad_json(self, tmp_path: Path) -> None:
        """Unparseable output is an execution error."""
        with (
            patch(
                "isobuild.pipeline.runner.subprocess.run",
                return_value=subprocess.CompletedProcess([], 0, stdout="{", stderr=""),
            ),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            inspect_image_config("docker", "img", tmp_path / "b.log")
        assert exc_info.value.kind == FailureKind.EXECUTION_ERROR


class TestEngineCapabilities:
    """Tests for DockerArtifactProducer and DockerImageAssembler."""

    def _producer(self, tmp_path: Path) -> DockerArtifactProducer:
        return DockerArtifactProducer(
            "docker",
            tmp_path / "context",
            tmp_path / "context" / "Dockerfile",
            tmp_path / "run",
            tmp_path / "run" / "build.log",
        )

    def test_produce(self, make_elf, tmp_path: Path) -> None:
        """Provision and builder stages are built, then the artifact inspected."""
        (tmp_path / "run").mkdir()
        engine = FakeEngine(make_elf)
        with patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine):
            artifact = self._producer(tmp_path).produce(_environment())

        targets = [c[c.index("--target") + 1] for c in engine.commands if c[1] == "build"]
        assert targets == ["provision", "builder"]
        assert artifact.source_path == ARTIFACT_PATH
        assert artifact.local_path == tmp_path / "run" / "tws-rust"
        assert artifact.stripped is True

    def test_produce_unusable_artifact(self, tmp_path: Path) -> None:
        """An extracted file that is not ELF is an invariant failure."""
        (tmp_path / "run").mkdir()

        def write_script(path: Path, **_: object) -> Path:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("#!/bin/sh\n")
            return path

        engine = FakeEngine(write_script)
        with (
            patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine),
            pytest.raises(PipelineExecutionError) as exc_info,
        ):
            self._producer(tmp_path).produce(_environment())
        assert exc_info.value.kind == FailureKind.INVARIANT

    def _assemble(self, engine: FakeEngine, tmp_path: Path):
        with patch("isobuild.pipeline.runner.subprocess.run", side_effect=engine):
            artifact = self._producer(tmp_path).produce(_environment())
            assembler = DockerImageAssembler(
                "docker",
                tmp_path / "context",
                tmp_path / "context" / "Dockerfile",
                tmp_path / "run",
                tmp_path / "run" / "build.log",
                tag="isobuild/tws-rust:test",
            )
            stage = RuntimeStage("debian:buster-slim", DESTINATION, ("tws-rust",))
            return assembler.assemble(stage, artifact)

    def test_assemble(self, make_elf, tmp_path: Path) -> None:
        """The verified runtime image reports its added file and command."""
        (tmp_path / "run").mkdir()
        image = self._assemble(FakeEngine(make_elf), tmp_path)

        assert image.image_id == "sha256:runtime"
        assert image.tag == "isobuild/tws-rust:test"
        assert image.added_files == (DESTINATION,)
        assert image.declared_command == ("tws-rust",)
        assert not (tmp_path / "run" / "image.tar").exists()

    def test_assemble_tags_after_verification(self, make_elf, tmp_path: Path) -> None:
        """The runtime build is untagged; the verified image ID is tagged last."""
        (tmp_path / "run").mkdir()
        engine = FakeEngine(make_elf)
        self._assemble(engine, tmp_path)

        runtime_build = [c for c in engine.commands if c[1] == "build"][-1]
        assert "--tag" not in runtime_build
        assert engine.commands[-1] == [
            "docker",
            "tag",
            "sha256:runtime",
            "isobuild/tws-rust:test",
        ]
        inspected = [c for c in engine.commands if c[1] in ("image", "save")]
        assert all(c[-1] == "sha256:runtime" for c in inspected)

    def test_assemble_extra_files(self, make_elf, tmp_path: Path) -> None:
        """A runtime layer with more than the artifact is an invariant failure."""
        (tmp_path / "run").mkdir()
        engine = FakeEngine(make_elf, layer_files=("usr/local/bin/tws-rust", "etc/x"))
        with pytest.raises(PipelineExecutionError) as exc_info:
            self._assemble(engine, tmp_path)

        assert exc_info.value.kind == FailureKind.INVARIANT
        assert "extra_files" in str(exc_info.value)

    def test_assemble_cmd_mismatch(self, make_elf, tmp_path: Path) -> None:
        """A runtime image running something else is an invariant failure."""
        (tmp_path / "run").mkdir()
        engine = FakeEngine(make_elf, cmd=["/bin/sh"])
        with pytest.raises(PipelineExecutionError) as exc_info:
            self._assemble(engine, tmp_path)
        assert "cmd_mismatch" in str(exc_info.value)

    @pytest.mark.parametrize(
        "engine_kwargs",
        [
            {"cmd": ["/bin/sh"]},
            {"layer_files": ("usr/local/bin/tws-rust", "etc/x")},
        ],
    )
    def test_rejected_image_is_never_tagged(
        self, make_elf, tmp_path: Path, engine_kwargs
    ) -> None:
        """A runtime image failing verification does not receive the tag."""
        (tmp_path / "run").mkdir()
        engine = FakeEngine(make_elf, **engine_kwargs)
        with pytest.raises(PipelineExecutionError):
            self._assemble(engine, tmp_path)

        assert not any(c[1] == "tag" for c in engine.commands)
        assert not any("isobuild/tws-rust:test" in c for c in engine.commands)
