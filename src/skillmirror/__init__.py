from ._version import __version__
from .config import Config, SyncMode, TargetConfig, load_config, save_config
from .discovery import Discoverer, DiscoveryResult, SkillInfo
from .errors import SkillmirrorError
from .installer import InstallOptions, Installer, InstallReport, TrackedRepoReport
from .inventory import Skill, scan_skills
from .manifest import ManifestStore
from .naming import flatten
from .reconcile import Reconciler, SyncReport
from .source import SourceDescriptor, SourceKind, parse_source

__all__ = [
    "__version__",
    "Config",
    "Discoverer",
    "DiscoveryResult",
    "InstallOptions",
    "InstallReport",
    "Installer",
    "ManifestStore",
    "Reconciler",
    "Skill",
    "SkillInfo",
    "SkillmirrorError",
    "SourceDescriptor",
    "SourceKind",
    "SyncMode",
    "SyncReport",
    "TargetConfig",
    "TrackedRepoReport",
    "flatten",
    "load_config",
    "parse_source",
    "save_config",
    "scan_skills",
]
