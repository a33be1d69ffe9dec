"""Build and runtime services for the aza-pg image."""

from azpg.services.emitter import ConfigEmitter
from azpg.services.manifest import Manifest, ManifestEntry, load_manifest, bundled_manifest
from azpg.services.orchestrator import BuildOrchestrator
from azpg.services.preload import PreloadResult, reconcile_preload
from azpg.services.resources import ResourceProfile, detect_resources
from azpg.services.tuning import TunedConfig, tune

__all__ = [
    "ConfigEmitter",
    "Manifest",
    "ManifestEntry",
    "load_manifest",
    "bundled_manifest",
    "BuildOrchestrator",
    "PreloadResult",
    "reconcile_preload",
    "ResourceProfile",
    "detect_resources",
    "TunedConfig",
    "tune",
]
