from __future__ import annotations

import enum
import json
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import pydantic
import semver
from pydantic import Field

from caskit.utils.exceptions import ConfigurationError

MANIFEST_FILENAME = "plugin.json"

LEADING_VERSION_PATTERN = re.compile(r"^(\d+)\.(\d+)\.(\d+)")
RANGE_VERSION_PATTERN = re.compile(r"^[><=~^]*\s*(\d+)\.(\d+)\.(\d+)")
PLUGIN_ID_PATTERN = re.compile(r"^[a-z0-9-]+$")

# Top-level manifest keys, in file order, with their on-disk names
REQUIRED_FIELDS = (
    'id', 'name', 'version', 'description', 'author', 'entry',
    'dependencies', 'permissions', 'casVersion',
)
OPTIONAL_FIELDS = ('compatibility', 'metadata')


class PluginPermission(str, enum.Enum):
    STORAGE_READ = 'storage.read'
    STORAGE_WRITE = 'storage.write'
    API_REQUEST = 'api.request'
    DOM_ACCESS = 'dom.access'
    EVENTS_EMIT = 'events.emit'
    EVENTS_LISTEN = 'events.listen'
    NETWORK_REQUEST = 'network.request'
    FILE_READ = 'file.read'
    FILE_WRITE = 'file.write'
    CAMERA_ACCESS = 'camera.access'
    MICROPHONE_ACCESS = 'microphone.access'

    @classmethod
    def is_known(cls, value: str) -> bool:
        return value in cls._value2member_map_

    @classmethod
    def get_description(cls, permission: PluginPermission) -> str:
        descriptions = {
            cls.STORAGE_READ: 'Read plugin storage',
            cls.STORAGE_WRITE: 'Write plugin storage',
            cls.API_REQUEST: 'Call the CAS platform API',
            cls.DOM_ACCESS: 'Access the host page DOM',
            cls.EVENTS_EMIT: 'Emit events on the platform event bus',
            cls.EVENTS_LISTEN: 'Listen to platform events',
            cls.NETWORK_REQUEST: 'Make requests to external services',
            cls.FILE_READ: 'Read files from the file system',
            cls.FILE_WRITE: 'Write files to the file system',
            cls.CAMERA_ACCESS: 'Access the camera',
            cls.MICROPHONE_ACCESS: 'Access the microphone',
        }
        return descriptions.get(permission, 'Unknown permission')

    @classmethod
    def get_risk_level(cls, permission: PluginPermission) -> str:
        high_risk = {cls.FILE_WRITE, cls.CAMERA_ACCESS, cls.MICROPHONE_ACCESS}
        medium_risk = {cls.NETWORK_REQUEST, cls.DOM_ACCESS, cls.FILE_READ, cls.STORAGE_WRITE}

        if permission in high_risk:
            return 'high'
        elif permission in medium_risk:
            return 'medium'
        else:
            return 'low'


class DependencyType(str, enum.Enum):
    CORE = 'core'
    PEER = 'peer'
    EXTERNAL = 'external'


class _ManifestModel(pydantic.BaseModel):
    model_config = pydantic.ConfigDict(frozen=True, populate_by_name=True)


class PluginDependency(_ManifestModel):
    name: str
    version: str
    type: DependencyType


class PluginCompatibility(_ManifestModel):
    min_cas_version: Optional[str] = Field(default=None, alias='minCasVersion')
    max_cas_version: Optional[str] = Field(default=None, alias='maxCasVersion')


class PluginMetadata(_ManifestModel):
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    repository: Optional[str] = None
    homepage: Optional[str] = None
    license: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)


class PluginManifest(_ManifestModel):
    """Identity and contract of a CAS plugin, as read from ``plugin.json``.

    The model checks presence and types only. Format rules (id pattern,
    version shape, permission allow-list) belong to
    :class:`caskit.plugin_system.validator.ManifestValidator` so that they can
    be reported as individual coded issues.
    """

    id: str
    name: str
    version: str
    description: str
    author: str
    entry: str
    dependencies: List[PluginDependency]
    permissions: List[str]
    cas_version: str = Field(alias='casVersion')
    compatibility: Optional[PluginCompatibility] = None
    metadata: Optional[PluginMetadata] = None

    @property
    def default_archive_stem(self) -> str:
        return f'{self.id}-{self.version}'

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json', by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    def get_permission_risks(self) -> Dict[str, List[str]]:
        risks: Dict[str, List[str]] = {'high': [], 'medium': [], 'low': []}
        for permission in self.permissions:
            if not PluginPermission.is_known(permission):
                continue
            risk_level = PluginPermission.get_risk_level(PluginPermission(permission))
            risks[risk_level].append(permission)
        return risks

    def dependencies_of_type(self, dependency_type: DependencyType) -> List[PluginDependency]:
        return [dep for dep in self.dependencies if dep.type == dependency_type]

    def is_compatible_with(self, platform_version: str) -> bool:
        """Check whether a platform version lies inside the compatibility range.

        A manifest without compatibility bounds is compatible with everything.
        """
        try:
            platform_ver = semver.Version.parse(leading_version(platform_version))
            if self.compatibility is None:
                return True

            if self.compatibility.min_cas_version:
                min_ver = semver.Version.parse(leading_version(self.compatibility.min_cas_version))
                if platform_ver < min_ver:
                    return False

            if self.compatibility.max_cas_version:
                max_ver = semver.Version.parse(leading_version(self.compatibility.max_cas_version))
                if platform_ver > max_ver:
                    return False

            return True
        except ValueError:
            return False

    @classmethod
    def load(cls, path: Union[str, Path]) -> PluginManifest:
        """Load and type-check a manifest file.

        Raises:
            ConfigurationError: If the file is missing, not JSON or malformed
        """
        path = Path(path)
        if not path.exists():
            raise ConfigurationError(f'Manifest file not found: {path}', path=str(path), code='MANIFEST_NOT_FOUND')
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return cls.model_validate(data)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ConfigurationError(f'Invalid JSON in manifest: {e}', path=str(path), code='INVALID_JSON') from e
        except pydantic.ValidationError as e:
            raise ConfigurationError(f'Invalid manifest data: {e}', path=str(path), code='INVALID_MANIFEST') from e


def version_components(version: str) -> Optional[Tuple[int, int, int]]:
    """Numeric ``major.minor.patch`` prefix of a version string.

    Comparison operators (``>=``, ``^``, ``~``) in front of the numbers are
    tolerated. Returns None when no such prefix exists.
    """
    match = RANGE_VERSION_PATTERN.match(version.strip())
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


def leading_version(version: str) -> str:
    """Normalize a version string to its ``major.minor.patch`` prefix.

    Raises:
        ValueError: If the string does not start with a version
    """
    components = version_components(version)
    if components is None:
        raise ValueError(f"Not a version: {version!r}")
    return str(semver.Version(*components))
