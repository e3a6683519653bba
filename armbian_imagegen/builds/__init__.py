"""Build pipeline module.

This module handles:
- Customization script generation from build configurations
- Injecting scripts into images or emitting external deployment packages
- Artifact packaging, checksums and manifests
- Orchestrating builds for an external job tracker
"""

from armbian_imagegen.builds.artifacts import (
    content_type_for,
    find_artifact,
    iter_artifact_bytes,
    package_artifacts,
)
from armbian_imagegen.builds.injector import InjectionResult, inject
from armbian_imagegen.builds.scripts import CustomizationScripts, generate_scripts
from armbian_imagegen.builds.service import (
    JobTracker,
    execute_build,
    generate_build_config,
    process_next_build,
    run_build_job,
)

__all__ = [
    "CustomizationScripts",
    "InjectionResult",
    "JobTracker",
    "content_type_for",
    "execute_build",
    "find_artifact",
    "generate_build_config",
    "generate_scripts",
    "inject",
    "iter_artifact_bytes",
    "package_artifacts",
    "process_next_build",
    "run_build_job",
]
