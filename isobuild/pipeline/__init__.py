"""Pipeline orchestration module.

This module handles:
- The two-stage pipeline model (builder -> runtime)
- Dockerfile rendering and build context staging
- Running the container engine and extracting the artifact
- Artifact inspection and runtime layer verification
- Cache keys, run records and manifests
"""

from isobuild.pipeline.models import Artifact, PipelineRun

__all__ = ["Artifact", "PipelineRun"]

# Submodules are imported explicitly (isobuild.pipeline.service, etc.)
