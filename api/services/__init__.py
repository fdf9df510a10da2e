"""Collaborators of the job engine: discovery, builders, telemetry, infra, logs."""
from .discovery import ArtifactDiscovery, DirectoryDiscovery
from .infra import InfraCommands
from .logs import FileLogSource, LogEvent, LogSource
from .staleness import GitChangedFiles, stale_artifacts
from .telemetry import SystemResources, sample_resources
from .toolchains import ArtifactBuilder, BuildError, CommandBuilder

__all__ = [
    "ArtifactBuilder",
    "ArtifactDiscovery",
    "BuildError",
    "CommandBuilder",
    "DirectoryDiscovery",
    "FileLogSource",
    "GitChangedFiles",
    "InfraCommands",
    "LogEvent",
    "LogSource",
    "SystemResources",
    "sample_resources",
    "stale_artifacts",
]
