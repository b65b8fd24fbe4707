from ._version import __version__
from .client import AgentSkillsError, AgentSkillsHTTPError, HttpClient
from .config import Config, load_config
from .installer import (
    DirectoryCollision,
    InstallAllResult,
    InstallError,
    InstallFailure,
    InstallResult,
    InstallSuccess,
    SkillInstaller,
    SkillNotFound,
)
from .lockfile import LockFileCorrupt, LockFileManager, SkillLockEntry, SkillLockFile, get_allowed_skills
from .manifest import ManifestInvalid, SkillManifest
from .providers import FetchError, UnsupportedSourceKind, default_providers, make_http_client
from .registry import RegistryError, RegistryState, Skill, SkillMetadata, SkillRegistry
from .specifier import InvalidSpecifier, ParsedSource, parse

__all__ = [
    "__version__",
    "AgentSkillsError",
    "AgentSkillsHTTPError",
    "Config",
    "DirectoryCollision",
    "FetchError",
    "HttpClient",
    "InstallAllResult",
    "InstallError",
    "InstallFailure",
    "InstallResult",
    "InstallSuccess",
    "InvalidSpecifier",
    "LockFileCorrupt",
    "LockFileManager",
    "ManifestInvalid",
    "ParsedSource",
    "RegistryError",
    "RegistryState",
    "Skill",
    "SkillInstaller",
    "SkillLockEntry",
    "SkillLockFile",
    "SkillManifest",
    "SkillMetadata",
    "SkillNotFound",
    "SkillRegistry",
    "UnsupportedSourceKind",
    "default_providers",
    "get_allowed_skills",
    "load_config",
    "make_http_client",
    "parse",
]
