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

"""Set up the Webmin stable, prerelease or unstable package repository.

The setup runs as a single pipeline: detect the OS, resolve the channel, ask for
confirmation, download the signing key and write the repository definition for the
host's package manager. It can be used from a charm:

```python
from charms.webmin_setup_repo.v0 import base, channels, setup_repo

options = channels.RepoOptions(channel=channels.Channel.Unstable, force=True)
try:
    setup_repo.setup(options)
except base.Error as e:
    self.unit.status = BlockedStatus(e.message)
```

or from the command line, as `webmin-setup-repo [OPTIONS]` or by executing this file.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Callable, TextIO

from charms.webmin_setup_repo.v0 import apt, dnf, keys, osrelease
from charms.webmin_setup_repo.v0.base import (
    Error,
    RepositoryWriter,
    SetupPermissionError,
    UnsupportedPackageManagerError,
)
from charms.webmin_setup_repo.v0.channels import Channel, RepoOptions, RepositoryProfile, resolve

logger = logging.getLogger(__name__)
# parent of every module logger in this library
package_logger = logging.getLogger(__name__.rpartition(".")[0])

# The unique Charmhub library identifier, never change it
LIBID = "10ea42ab47934eabbbb46018d7fbf17b"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


class Style:
    """ANSI escapes, empty when stdout is not a terminal."""

    _tty = sys.stdout.isatty() and os.getenv("TERM", "dumb") != "dumb"

    reset = "\033[0m" if _tty else ""
    bold = "\033[1m" if _tty else ""
    italic = "\033[3m" if _tty else ""
    red = "\033[31m" if _tty else ""
    green = "\033[32m" if _tty else ""
    banner = "\033[47;1;31;82m" if _tty else ""


BANNERS = {
    Channel.Prerelease: ("Prerelease builds are automated from the latest tagged release",),
    Channel.Unstable: (
        "Unstable builds are automated experimental versions designed for",
        "development, often containing critical bugs and breaking changes",
    ),
}


def check_permission() -> None:
    """Raise `SetupPermissionError` unless running as root."""
    if os.geteuid() != 0:
        raise SetupPermissionError("`webmin-setup-repo` must be run as root!")


def confirm(
    profile: RepositoryProfile,
    force: bool = False,
    input_fn: Callable[[], str] = input,
    out: TextIO = sys.stdout,
) -> bool:
    """Ask the operator to confirm the setup.

    Only "y" or "Y" confirm. A forced setup does not prompt.
    """
    for line in BANNERS.get(profile.channel, ()):
        out.write(f"{Style.banner}{line}{Style.reset}\n")
    out.write(f"Setup {profile.display_description} repository? (y/N) ")
    if force:
        out.write("\n")
        return True
    out.flush()
    try:
        answer = input_fn()
    except EOFError:
        answer = ""
    return answer in ("y", "Y")


def writer_for(host: osrelease.HostOs, options: RepoOptions) -> RepositoryWriter:
    """Return the repository writer matching the host's package type.

    Raises:
        UnsupportedPackageManagerError for anything but deb and rpm hosts
    """
    if host.package_type == "deb":
        return apt.DebianRepositoryWriter(
            host.package_manager, options.key_suffix, options.host, repo_id=host.repo_id
        )
    if host.package_type == "rpm":
        return dnf.RpmRepositoryWriter(
            host.package_manager,
            options.key_suffix,
            options.host,
            repo_dir=host.repo_dir,
            extra=host.repo_options,
        )
    raise UnsupportedPackageManagerError("Cannot set up repositories on this system.")


def report(options: RepoOptions, host: osrelease.HostOs, out: TextIO = sys.stdout) -> bool:
    """Print how to install the packages if the checked binary is missing.

    Returns:
        Whether the hint was printed.
    """
    binary = options.check_binary
    if binary in ("", "0") or (os.path.isfile(binary) and os.access(binary, os.X_OK)):
        return False
    out.write(f"{options.install_message}\n")
    out.write(
        f"  {Style.green}{Style.bold}{Style.italic}"
        f"{host.package_manager.install_command} {options.install_packages}{Style.reset}\n"
    )
    return True


def setup(
    options: RepoOptions,
    os_release: str = osrelease.OS_RELEASE,
    input_fn: Callable[[], str] = input,
    out: TextIO = sys.stdout,
) -> bool:
    """Run the repository setup.

    Returns:
        False when the operator declined, True once the repository is in place.

    Raises:
        Error subclasses for every fatal condition
    """
    check_permission()
    host = osrelease.detect(os_release)
    profile = resolve(options.channel, options)
    writer = writer_for(host, options)

    if not confirm(profile, options.force, input_fn=input_fn, out=out):
        logger.debug("setup of %s declined", profile.name)
        return False

    writer.prepare()
    key_path = keys.download_key(profile.key_url, options.staging_dir, host.package_manager)
    writer.install_key(key_path)
    writer.write_artifact(profile)
    writer.refresh_metadata()
    report(options, host, out=out)
    return True


class Formatter(logging.Formatter):
    """Plain messages, with errors prefixed by a red "Error:"."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        if record.levelno >= logging.ERROR:
            return f"{Style.red}Error:{Style.reset} {message}"
        return message


def parse_args(argv: list[str] | None = None) -> RepoOptions:
    """Turn command line arguments into `RepoOptions`."""
    parser = argparse.ArgumentParser(
        prog="webmin-setup-repo",
        description="Set up a stable, prerelease, or unstable repository for Webmin and "
        "Usermin packages on Debian-based and RPM-based systems",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Log every command run")
    parser.add_argument(
        "-f", "--force", action="store_true", help="Force setup without confirmation"
    )

    mode = parser.add_argument_group("repository types")
    mode.add_argument(
        "--stable", dest="channel", action="store_const", const=Channel.Stable,
        help="Set up the stable repo, built with extra testing",
    )  # fmt: skip
    mode.add_argument(
        "--prerelease", "--rc", dest="channel", action="store_const", const=Channel.Prerelease,
        help="Set up the prerelease repo built from latest tag",
    )  # fmt: skip
    mode.add_argument(
        "--unstable", "--testing", "-t", dest="channel", action="store_const",
        const=Channel.Unstable, help="Set up unstable repo built from the latest commit",
    )  # fmt: skip

    config = parser.add_argument_group("repository configuration")
    config.add_argument("--host", help="Main repository host")
    config.add_argument("--prerelease-host", help="Prerelease repository host")
    config.add_argument("--unstable-host", help="Unstable repository host")
    config.add_argument("--key", help="Repository signing key file")
    config.add_argument("--key-suffix", help="Repository key suffix for file naming")
    config.add_argument("--staging-dir", help="Directory the key is downloaded to")

    meta = parser.add_argument_group("repository metadata")
    meta.add_argument("--name", help="Base name for repository (default: webmin)")
    meta.add_argument("--description", help="Description for repository (default: Webmin)")
    meta.add_argument("--component", help="Repository component (default: main)")
    meta.add_argument("--section", help="Repository section (default: contrib)")
    meta.add_argument("--dist", help="Distribution name (default: stable)")

    post = parser.add_argument_group("post-installation options")
    post.add_argument("--check-binary", help="Binary to check in post-install")
    post.add_argument(
        "--install-message", help="Message to show in post-install if binary not found"
    )
    post.add_argument("--install-packages", help="Packages to suggest for installation")

    args = parser.parse_args(argv)
    if args.debug:
        package_logger.setLevel(logging.DEBUG)

    overrides = {
        key: value
        for key, value in vars(args).items()
        if key != "debug" and value is not None
    }
    return RepoOptions(**overrides)


def main(argv: list[str] | None = None) -> int:
    """Command line entry point. Returns the process exit code."""
    # progress on stdout, errors on stderr
    progress_handler = logging.StreamHandler(sys.stdout)
    progress_handler.addFilter(lambda record: record.levelno < logging.ERROR)
    error_handler = logging.StreamHandler(sys.stderr)
    error_handler.setLevel(logging.ERROR)
    handlers = (progress_handler, error_handler)
    for handler in handlers:
        handler.setFormatter(Formatter())
        package_logger.addHandler(handler)
    package_logger.setLevel(logging.INFO)
    try:
        options = parse_args(argv)
        setup(options, out=sys.stdout)
    except Error as e:
        logger.error(e.message)
        return 1
    finally:
        for handler in handlers:
            package_logger.removeHandler(handler)
    return 0


if __name__ == "__main__":  # pragma: nocover
    sys.exit(main())
