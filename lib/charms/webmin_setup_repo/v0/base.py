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

"""Shared errors and interfaces for the webmin_setup_repo libraries.

Every error raised by the libraries derives from `Error`, so callers can handle a failed
setup with a single `except` clause:

```python
from charms.webmin_setup_repo.v0 import base, setup_repo

try:
    setup_repo.setup(options)
except base.Error as e:
    logger.error("could not set up repository: %s", e.message)
```

`PackageManager` wraps the install/update/clean commands of a system package manager, and
`RepositoryWriter` holds everything a package-manager dialect needs to install a trust key
and write a repository definition.
"""

from __future__ import annotations

import logging
import subprocess
import typing
from abc import ABC, abstractmethod
from pathlib import Path

if typing.TYPE_CHECKING:
    from charms.webmin_setup_repo.v0.channels import RepositoryProfile

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "912c0ffb2bc94bb18890fd649fd18cf6"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


class Error(Exception):
    """Base class of most errors raised by this library."""

    def __repr__(self):
        """Represent the Error."""
        return f"<{type(self).__module__}.{type(self).__name__} {self.args}>"

    @property
    def name(self):
        """Return a string representation of the model plus class."""
        return f"<{type(self).__module__}.{type(self).__name__}>"

    @property
    def message(self):
        """Return the message passed as an argument."""
        return self.args[0]


class SetupPermissionError(Error, PermissionError):
    """Raised when the setup is not run with root privileges."""


class DetectionError(Error):
    """Raised when the operating system cannot be identified."""


class UnsupportedOsError(Error):
    """Raised when the operating system belongs to no supported family."""


class DownloadError(Error):
    """Raised when the repository key cannot be downloaded."""


class UnsupportedPackageManagerError(Error):
    """Raised when no repository writer exists for the host's package type."""


class PackageError(Error):
    """Raised when a package manager command fails."""


class GPGKeyError(Error):
    """Raised when a GPG key cannot be imported or converted."""


def run(cmd: list[str], **kwargs) -> subprocess.CompletedProcess:
    """Run a command, capturing its output.

    Output is kept for debug logging only; the caller decides what a non-zero exit means.
    """
    logger.debug("running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, **kwargs)
    except FileNotFoundError:
        return subprocess.CompletedProcess(cmd, 127, "", f"{cmd[0]}: command not found")
    if result.returncode != 0:
        logger.debug("%s exited with %d: %s", cmd[0], result.returncode, result.stderr.strip())
    return result


class PackageManager(ABC):
    """The install, update and clean operations of a system package manager."""

    #: Command shown to operators, e.g. ``dnf install``.
    install_command: str = ""

    @abstractmethod
    def install(self, *packages: str) -> None:
        """Install packages non-interactively.

        Raises:
            PackageError if the package manager fails
        """

    @abstractmethod
    def update(self) -> bool:
        """Refresh repository metadata. Returns whether the refresh succeeded."""

    @abstractmethod
    def clean(self) -> bool:
        """Drop cached repository metadata. Returns whether the clean succeeded."""

    def __repr__(self):
        """Represent the package manager."""
        return f"<{type(self).__name__}: {self.install_command}>"


class RepositoryWriter(ABC):
    """Installs a trust key and writes the repository definition for one dialect."""

    def __init__(self, package_manager: PackageManager, key_suffix: str, host: str):
        self.package_manager = package_manager
        self.key_suffix = key_suffix
        self.host = host

    def prepare(self) -> None:
        """Make sure the tools needed by `install_key` are present."""

    @abstractmethod
    def install_key(self, key_path: Path) -> Path:
        """Install a staged key into the trust store. Returns the installed path."""

    @abstractmethod
    def build_origin(self, profile: RepositoryProfile) -> str:
        """Return the repository URL for a profile."""

    @abstractmethod
    def write_artifact(self, profile: RepositoryProfile) -> Path:
        """Write the repository definition, replacing any previous one."""

    def refresh_metadata(self) -> None:
        """Refresh package manager metadata. Failures are not fatal."""
