"""Container start pipeline.

Detect resources, tune, reconcile preload libraries and render the
server configuration. Runs once per start; nothing is persisted
between starts except the rendered file.
"""

from dataclasses import dataclass, field
from typing import Optional

from azpg.core.config import RuntimeSettings, split_library_list
from azpg.core.context import ExecutionContext
from azpg.services.emitter import ConfigEmitter
from azpg.services.preload import PreloadResult, resolve_preload
from azpg.services.resources import DetectionPaths, ResourceProfile, detect_resources
from azpg.services.tuning import StorageProfile, TunedConfig, WorkloadProfile, tune


@dataclass
class StartupConfig:
    """Everything the server needs to start."""

    profile: ResourceProfile
    tuned: TunedConfig
    preload: PreloadResult
    overrides: dict[str, str] = field(default_factory=dict)
    emitter: ConfigEmitter = field(default_factory=ConfigEmitter)

    def render(self) -> str:
        """postgresql.conf content."""
        return self.emitter.render(self.tuned, self.overrides, self.preload.libraries)

    def server_args(self) -> list[str]:
        """``-c name=value`` arguments for the postgres command line."""
        return self.emitter.as_server_args(self.tuned, self.overrides, self.preload.libraries)

    def settings(self) -> dict[str, str]:
        return self.emitter.resolve(self.tuned, self.overrides, self.preload.libraries)


def prepare_startup(
    ctx: ExecutionContext,
    settings: RuntimeSettings,
    paths: Optional[DetectionPaths] = None,
    emitter: Optional[ConfigEmitter] = None,
) -> StartupConfig:
    """Run the start pipeline up to (not including) writing files.

    A shared_preload_libraries entry in POSTGRES_CONFIG_OVERRIDES is
    treated as the preload request, so it is reconciled like any other.

    Raises:
        ConfigurationError: If resources, enums or overrides are invalid
    """
    emitter = emitter or ConfigEmitter()

    profile = detect_resources(ctx, settings, paths)
    workload = WorkloadProfile(settings.workload_type)
    storage = StorageProfile(settings.storage_type)
    tuned = tune(profile, workload, storage)

    overrides = emitter.validate_overrides(settings.parsed_overrides())
    requested = None
    if "shared_preload_libraries" in overrides:
        requested = split_library_list(overrides.pop("shared_preload_libraries"))
        ctx.console.verbose("shared_preload_libraries override routed through the preload reconciler")

    preload = resolve_preload(ctx, settings, requested)

    return StartupConfig(
        profile=profile,
        tuned=tuned,
        preload=preload,
        overrides=overrides,
        emitter=emitter,
    )
