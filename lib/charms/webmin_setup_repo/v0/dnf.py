# Copyright 2024 Canonical Ltd.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""RPM repository setup for Enterprise Linux, Fedora and SUSE hosts.

This library wraps `dnf`, `yum` and `zypper` behind a common package manager and writes
INI-style `.repo` files whose key lives in `/etc/pki/rpm-gpg`.

To set up a repository using the library:

```python
import charms.webmin_setup_repo.v0.dnf as dnf

writer = dnf.RpmRepositoryWriter(dnf.RpmPackageManager("dnf"), "webmin-developers",
                                 "download.webmin.com")
try:
    writer.install_key(Path("/tmp/developers-key.asc"))
    writer.write_artifact(profile)
except dnf.Error:
    logger.error("Failed to set up the repository.")
```

__Important:__ SUSE repositories belong in `/etc/zypp/repos.d` and should refresh
automatically: pass `repo_dir=dnf.ZYPPER_REPO_DIR, extra=dnf.ZYPPER_OPTIONS`.
"""

from __future__ import annotations

import logging
import os
import shutil
import textwrap
import typing
from dataclasses import dataclass, field
from pathlib import Path

from charms.webmin_setup_repo.v0.base import (
    Error,
    PackageError,
    PackageManager,
    RepositoryWriter,
    run,
)

if typing.TYPE_CHECKING:
    from charms.webmin_setup_repo.v0.channels import RepositoryProfile

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "77662319e32b49e2ac5334be8c8b1019"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1

__all__ = ["Error", "RpmPackageManager", "RpmRepository", "RpmRepositoryWriter"]

YUM_REPO_DIR = "/etc/yum.repos.d"
ZYPPER_REPO_DIR = "/etc/zypp/repos.d"
RPM_GPG_DIR = "/etc/pki/rpm-gpg"
STABLE_PATH = "/download/newkey/yum"
# options only zypper understands
ZYPPER_OPTIONS = {"autorefresh": "1"}

# install, clean and refresh arguments per tool
_COMMANDS = {
    "dnf": (["install", "-y"], ["clean", "all"], ["makecache"]),
    "yum": (["install", "-y"], ["clean", "all"], ["makecache"]),
    "zypper": (["install", "-y"], ["clean"], ["refresh"]),
}


class RpmPackageManager(PackageManager):
    """`dnf`, `yum` or `zypper` as a `PackageManager`."""

    def __init__(self, tool: str):
        if tool not in _COMMANDS:
            raise ValueError(f"unknown rpm package manager: {tool}")
        self.tool = tool
        self.install_command = f"{tool} install"

    def _run(self, args: list[str]):
        return run([self.tool, *args])

    def install(self, *packages: str) -> None:
        """Install one or more packages.

        Args:
            *packages: Packages to install on the system.
        """
        if not packages:
            raise TypeError("No packages specified.")
        result = self._run([*_COMMANDS[self.tool][0], *packages])
        if result.returncode != 0:
            raise PackageError(
                f"{self.tool} install {' '.join(packages)} failed:\n{result.stderr}"
            )

    def clean(self) -> bool:
        """Drop cached metadata."""
        return self._run(_COMMANDS[self.tool][1]).returncode == 0

    def update(self) -> bool:
        """Refresh repository metadata."""
        return self._run(_COMMANDS[self.tool][2]).returncode == 0


@dataclass(frozen=True)
class RpmRepository:
    """Dataclass representing one `.repo` file section."""

    id: str
    name: str
    baseurl: str
    gpgkey: str
    enabled: bool = True
    gpgcheck: bool = True
    extra: dict[str, str] = field(default_factory=dict)

    def render(self) -> str:
        """Render the repository as an INI section."""
        text = textwrap.dedent(
            f"""\
            [{self.id}]
            name={self.name}
            baseurl={self.baseurl}
            enabled={int(self.enabled)}
            gpgkey={self.gpgkey}
            gpgcheck={int(self.gpgcheck)}
            """
        )
        for key, value in self.extra.items():
            text += f"{key}={value}\n"
        return text


def import_key(key_path: Path) -> bool:
    """Import a key into the RPM database."""
    return run(["rpm", "--import", str(key_path)]).returncode == 0


class RpmRepositoryWriter(RepositoryWriter):
    """Sets up a vendor repository on RPM-based hosts."""

    def __init__(
        self,
        package_manager: PackageManager,
        key_suffix: str,
        host: str,
        repo_dir: str = YUM_REPO_DIR,
        extra: dict[str, str] | None = None,
    ):
        super().__init__(package_manager, key_suffix, host)
        self.repo_dir = repo_dir
        self.extra = dict(extra or {})

    @property
    def trusted_key(self) -> str:
        """Path of the key in the RPM trust store."""
        return os.path.join(RPM_GPG_DIR, f"RPM-GPG-KEY-{self.key_suffix}")

    def install_key(self, key_path: Path) -> Path:
        """Import the key and copy it to the trust store, replacing an older copy."""
        logger.info("  Installing Webmin developers key ..")
        if not import_key(key_path):
            logger.warning("rpm could not import %s", key_path)
        os.makedirs(RPM_GPG_DIR, exist_ok=True)
        shutil.copyfile(key_path, self.trusted_key)
        logger.info("  .. done")
        return Path(self.trusted_key)

    def build_origin(self, profile: RepositoryProfile) -> str:
        """Stable repositories live under a fixed path of the origin."""
        if profile.stable:
            return f"{profile.origin}{STABLE_PATH}"
        return profile.origin

    def repository(self, profile: RepositoryProfile) -> RpmRepository:
        """Return the repository section for a profile."""
        return RpmRepository(
            id=f"{profile.name}-noarch",
            name=profile.description,
            baseurl=self.build_origin(profile),
            gpgkey=Path(self.trusted_key).as_uri(),
            extra=self.extra,
        )

    def write_artifact(self, profile: RepositoryProfile) -> Path:
        """Write `<repo_dir>/<name>.repo`, overwriting it."""
        logger.info("  Setting up %s repository ..", profile.display_description)
        filename = Path(self.repo_dir, f"{profile.name}.repo")
        filename.parent.mkdir(parents=True, exist_ok=True)
        filename.write_text(self.repository(profile).render())
        logger.info("  .. done")
        return filename
