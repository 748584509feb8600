# Copyright 2024 Canonical Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
# http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Detection of the host's package-manager dialect from `/etc/os-release`.

```python
from charms.webmin_setup_repo.v0 import osrelease

host = osrelease.detect()
logger.info("%s host, installing with '%s'", host.dialect, host.package_manager.install_command)
```

The family list in `ID_LIKE` takes precedence over `ID`. Classification is a keyword
match against three fixed vocabularies; anything else is rejected with
`UnsupportedOsError` rather than guessed.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass
from enum import Enum

from charms.webmin_setup_repo.v0 import apt, dnf
from charms.webmin_setup_repo.v0.base import DetectionError, PackageManager, UnsupportedOsError

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "e908aef3750948cca847a5bd903a7398"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


OS_RELEASE = "/etc/os-release"


class Dialect(Enum):
    """A package-manager family."""

    Debian = "debian"
    Rhel = "rhel"
    Suse = "suse"

    @property
    def keywords(self) -> frozenset[str]:
        """Identifiers that place an OS in this family."""
        return _KEYWORDS[self]

    @property
    def package_type(self) -> str:
        """The package format handled by this family."""
        return "deb" if self is Dialect.Debian else "rpm"

    def matches(self, corpus: str) -> bool:
        """Whether any keyword of this family occurs in an identification string."""
        return any(keyword in token for token in corpus.split() for keyword in self.keywords)

    def __str__(self):
        """Return the dialect name."""
        return self.value


_KEYWORDS = {
    Dialect.Debian: frozenset({"debian", "ubuntu"}),
    Dialect.Rhel: frozenset({"rhel", "fedora", "centos", "openEuler"}),
    Dialect.Suse: frozenset({"suse"}),
}


@dataclass(frozen=True)
class OsRelease:
    """The identification fields of `/etc/os-release`."""

    id: str = ""
    id_like: str = ""

    @classmethod
    def from_file(cls, path: str = OS_RELEASE) -> OsRelease:
        """Parse an os-release file.

        Raises:
            DetectionError if the file does not exist
        """
        if not os.path.isfile(path):
            raise DetectionError("Cannot detect OS!")

        fields: dict[str, str] = {}
        with open(path) as f:
            for line in f:
                line = line.strip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                key, _, value = line.partition("=")
                fields[key.strip()] = value.strip().strip("\"'")
        return cls(id=fields.get("ID", ""), id_like=fields.get("ID_LIKE", ""))

    @property
    def corpus(self) -> str:
        """The string classified: the family list when present, else the single ID."""
        return self.id_like or self.id


def classify(os_id: str, id_like: str = "") -> Dialect:
    """Classify identification strings into a dialect.

    Raises:
        DetectionError if both fields are empty
        UnsupportedOsError if no family matches
    """
    corpus = OsRelease(id=os_id, id_like=id_like).corpus
    if not corpus:
        raise DetectionError("Failed to detect OS!")
    for dialect in Dialect:
        if dialect.matches(corpus):
            return dialect
    raise UnsupportedOsError(f"Unknown OS : {corpus}")


@dataclass(frozen=True)
class HostOs:
    """What the rest of the setup needs to know about the host."""

    dialect: Dialect
    repo_id: str
    package_manager: PackageManager

    @property
    def package_type(self) -> str:
        """The package format of the host."""
        return self.dialect.package_type

    @property
    def repo_dir(self) -> str:
        """Directory holding RPM repository files."""
        return dnf.ZYPPER_REPO_DIR if self.dialect is Dialect.Suse else dnf.YUM_REPO_DIR

    @property
    def repo_options(self) -> dict[str, str]:
        """Extra `.repo` options the host's package manager needs."""
        return dict(dnf.ZYPPER_OPTIONS) if self.dialect is Dialect.Suse else {}


def package_manager_for(dialect: Dialect) -> PackageManager:
    """Return the package manager adapter of a dialect.

    On RHEL-like hosts `dnf` is used whenever it is on PATH, `yum` otherwise.
    """
    if dialect is Dialect.Debian:
        return apt.AptGet()
    if dialect is Dialect.Suse:
        return dnf.RpmPackageManager("zypper")
    return dnf.RpmPackageManager("dnf" if shutil.which("dnf") else "yum")


def detect(path: str = OS_RELEASE) -> HostOs:
    """Identify the host from an os-release file.

    Raises:
        DetectionError if the file is missing or carries no identification
        UnsupportedOsError if the OS is not Debian-, RHEL- or SUSE-like
    """
    release = OsRelease.from_file(path)
    dialect = classify(release.id, release.id_like)
    host = HostOs(
        dialect=dialect,
        repo_id=release.id or "debian",
        package_manager=package_manager_for(dialect),
    )
    logger.debug("detected %s (%s) using %r", host.repo_id, dialect, host.package_manager)
    return host
