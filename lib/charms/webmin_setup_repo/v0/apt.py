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

"""Debian/Ubuntu repository setup.

This module wraps `apt-get` and writes one-line-style apt sources signed by a dedicated
keyring under `/usr/share/keyrings`, in order to add a vendor repository to Debian-like
systems.

`DebianRepositoryWriter` performs the full setup for a repository profile:

```python
writer = apt.DebianRepositoryWriter(apt.AptGet(), "webmin-developers",
                                    "download.webmin.com", repo_id="ubuntu")
writer.prepare()
writer.install_key(Path("/tmp/developers-key.asc"))
writer.write_artifact(profile)
writer.refresh_metadata()
```

A single source line can also be rendered without touching the system:

```python
repo = apt.DebianRepository(
    uri="https://download.webmin.com/download/newkey/repository",
    release="stable",
    groups=["contrib"],
    gpg_key_filename="/usr/share/keyrings/ubuntu-webmin-developers.gpg",
)
line = repo.line()
```
"""

from __future__ import annotations

import fileinput
import logging
import os
import subprocess
import typing
from pathlib import Path

from charms.webmin_setup_repo.v0.base import (
    GPGKeyError,
    PackageError,
    PackageManager,
    RepositoryWriter,
    run,
)

if typing.TYPE_CHECKING:
    from charms.webmin_setup_repo.v0.channels import RepositoryProfile

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "6e9734e06c014b8d91d166bfdf95ceab"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


SOURCES_LIST = "/etc/apt/sources.list"
SOURCES_DIR = "/etc/apt/sources.list.d"
KEYRING_DIR = "/usr/share/keyrings"
GPG_BINARY = "/usr/bin/gpg"
STABLE_PATH = "/download/newkey/repository"


class AptGet(PackageManager):
    """`apt-get` as a `PackageManager`."""

    install_command = "apt-get install --install-recommends"

    @staticmethod
    def _apt(*args: str) -> subprocess.CompletedProcess:
        env = os.environ.copy()
        env["DEBIAN_FRONTEND"] = "noninteractive"
        return run(["apt-get", *args], env=env)

    def install(self, *packages: str) -> None:
        """Install packages with their recommends.

        Raises:
            PackageError if apt-get fails
        """
        if not packages:
            raise TypeError("No packages specified.")
        result = self._apt("install", "--install-recommends", "--quiet", "--assume-yes", *packages)
        if result.returncode != 0:
            raise PackageError(f"Could not install package(s) {list(packages)}: {result.stderr}")

    def update(self) -> bool:
        """Run `apt-get update`."""
        return self._apt("update").returncode == 0

    def clean(self) -> bool:
        """Run `apt-get clean`."""
        return self._apt("clean").returncode == 0


def import_key(key_path: Path) -> bool:
    """Import a key into the invoking user's GPG keyring. Output is discarded."""
    return run(["gpg", "--import", str(key_path)]).returncode == 0


def _dearmor_gpg_key(key_asc: bytes) -> bytes:
    """Convert a GPG key in the ASCII armor format to the binary format.

    Args:
      key_asc: A GPG key in ASCII armor format.

    Returns:
      A GPG key in binary format

    Raises:
      GPGKeyError
    """
    try:
        ps = subprocess.run(["gpg", "--dearmor"], capture_output=True, input=key_asc)
    except OSError as e:
        raise GPGKeyError("gpg is not installed") from e
    out, err = ps.stdout, ps.stderr.decode()
    if "gpg: no valid OpenPGP data found." in err or ps.returncode != 0:
        raise GPGKeyError(
            "Invalid GPG key material. Check your network setup"
            " (MTU, routing, DNS) and/or proxy server settings"
            " as well as the repository host status."
        )
    return out


def _write_apt_gpg_keyfile(key_name: str, key_material: bytes) -> None:
    """Write GPG key material into a file at a provided path.

    Args:
      key_name: Path of the key file
      key_material: A GPG key material (binary)
    """
    with open(key_name, "wb") as keyf:
        keyf.write(key_material)


def remove_host_lines(host: str, filename: str = SOURCES_LIST) -> int:
    """Drop every line mentioning `host` from a sources file.

    Returns:
      The number of lines removed.
    """
    if not os.path.isfile(filename):
        return 0
    removed = 0
    with fileinput.input(filename, inplace=True) as lines:
        for line in lines:
            if host in line:
                removed += 1
            else:
                print(line, end="")
    if removed:
        logger.debug("removed %d line(s) for %s from %s", removed, host, filename)
    return removed


class DebianRepository:
    """An abstraction to represent a one-line-style repository."""

    def __init__(
        self,
        uri: str,
        release: str,
        groups: list[str],
        gpg_key_filename: str = "",
        repotype: str = "deb",
    ):
        self._uri = uri
        self._release = release
        self._groups = groups
        self._gpg_key_filename = gpg_key_filename
        self._repotype = repotype

    @property
    def repotype(self):
        """Return whether it is binary or source."""
        return self._repotype

    @property
    def uri(self):
        """Return the URI."""
        return self._uri

    @property
    def release(self):
        """Return which distribution label it is valid for."""
        return self._release

    @property
    def groups(self):
        """Return the enabled package groups."""
        return self._groups

    @property
    def gpg_key(self):
        """Returns the path to the GPG key for this repository."""
        return self._gpg_key_filename

    def make_options_string(self) -> str:
        """Generate the options section of a one-line-style definition."""
        if not self.gpg_key:
            return ""
        return f"[signed-by={self.gpg_key}] "

    def line(self) -> str:
        """Return the one-per-line format repository definition."""
        return "{repotype} {options}{uri} {release} {groups}".format(
            repotype=self.repotype,
            options=self.make_options_string(),
            uri=self.uri,
            release=self.release,
            groups=" ".join(self.groups),
        )

    def __repr__(self):
        """Represent the repository."""
        return f"<{type(self).__name__}: {self.line()}>"


class DebianRepositoryWriter(RepositoryWriter):
    """Sets up a vendor repository on Debian-like hosts."""

    def __init__(
        self, package_manager: PackageManager, key_suffix: str, host: str, repo_id: str = "debian"
    ):
        super().__init__(package_manager, key_suffix, host)
        self.repo_id = repo_id

    @property
    def keyring(self) -> str:
        """Path of the dearmored keyring referenced by `signed-by`."""
        return os.path.join(KEYRING_DIR, f"{self.repo_id}-{self.key_suffix}.gpg")

    @property
    def legacy_keyring(self) -> str:
        """Keyring name written by older versions of the setup."""
        return os.path.join(KEYRING_DIR, f"debian-{self.key_suffix}.gpg")

    def prepare(self) -> None:
        """Install gnupg when the host lacks it.

        Raises:
            GPGKeyError if gnupg cannot be installed
        """
        if os.access(GPG_BINARY, os.X_OK):
            return
        logger.info("  Installing required gnupg from OS repos ..")
        self.package_manager.update()
        try:
            self.package_manager.install("gnupg")
        except PackageError as e:
            raise GPGKeyError(f"gpg is not installed and gnupg could not be: {e.message}") from e
        logger.info("  .. done")

    def install_key(self, key_path: Path) -> Path:
        """Replace the vendor keyring with the staged key.

        Raises:
            GPGKeyError if the key cannot be dearmored
        """
        for stale in (self.legacy_keyring, self.keyring):
            if os.path.exists(stale):
                os.remove(stale)
        logger.info("  Installing Webmin developers key ..")
        import_key(key_path)
        os.makedirs(KEYRING_DIR, exist_ok=True)
        _write_apt_gpg_keyfile(self.keyring, _dearmor_gpg_key(Path(key_path).read_bytes()))
        logger.info("  .. done")
        return Path(self.keyring)

    def build_origin(self, profile: RepositoryProfile) -> str:
        """Stable repositories live under a fixed path of the origin."""
        if profile.stable:
            return f"{profile.origin}{STABLE_PATH}"
        return profile.origin

    def repository(self, profile: RepositoryProfile) -> DebianRepository:
        """Return the repository entry for a profile."""
        return DebianRepository(
            uri=self.build_origin(profile),
            release=profile.dist,
            groups=[profile.section if profile.stable else profile.component],
            gpg_key_filename=self.keyring,
        )

    def write_artifact(self, profile: RepositoryProfile) -> Path:
        """Write the profile's source file, dropping old entries for the host."""
        remove_host_lines(self.host)
        logger.info("  Setting up %s repository ..", profile.display_description)
        filename = Path(SOURCES_DIR, f"{profile.name}.list")
        filename.parent.mkdir(parents=True, exist_ok=True)
        filename.write_text(self.repository(profile).line() + "\n")
        logger.info("  .. done")
        return filename

    def refresh_metadata(self) -> None:
        """Run `apt-get clean` and `apt-get update`, logging failures only."""
        logger.info("  Cleaning repository metadata ..")
        if not self.package_manager.clean():
            logger.info("  .. clean failed, continuing")
        else:
            logger.info("  .. done")
        logger.info("  Downloading repository metadata ..")
        if not self.package_manager.update():
            logger.info("  .. update failed, continuing")
        else:
            logger.info("  .. done")
