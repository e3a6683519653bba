"""Build configuration module.

This module handles:
- Schema validation of board/distribution/customization configurations
- Loading configurations from YAML/JSON files
- Persisting the build-start snapshot
"""

from armbian_imagegen.configuration.io import (
    load_configuration,
    save_configuration,
)
from armbian_imagegen.configuration.schema import (
    BoardSchema,
    BuildConfiguration,
    DistributionSchema,
    NetworkSchema,
    PackagesSchema,
    ScriptsSchema,
    SSHSchema,
    UserSchema,
    WifiSchema,
)

__all__ = [
    "BoardSchema",
    "BuildConfiguration",
    "DistributionSchema",
    "NetworkSchema",
    "PackagesSchema",
    "SSHSchema",
    "ScriptsSchema",
    "UserSchema",
    "WifiSchema",
    "load_configuration",
    "save_configuration",
]
