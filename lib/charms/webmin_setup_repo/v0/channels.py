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

"""Release channels and the repository options derived from them.

`RepoOptions` holds the defaults of the Webmin repositories and any overrides given by the
operator. It is built once and never modified; `resolve` picks the profile of the requested
channel:

```python
from charms.webmin_setup_repo.v0 import channels

options = channels.RepoOptions(channel=channels.Channel.Prerelease, name="usermin")
profile = channels.resolve(options.channel, options)
assert profile.name == "usermin-prerelease"
assert profile.dist == "webmin"
```
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from enum import Enum

# The unique Charmhub library identifier, never change it
LIBID = "ae20369d18034e06afcacb82b3a0da65"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


DEFAULT_DIST = "stable"
NEUTRAL_DIST = "webmin"


class Channel(Enum):
    """A release line of the vendor repositories."""

    Stable = "stable"
    Prerelease = "prerelease"
    Unstable = "unstable"

    def __str__(self):
        """Return the channel name."""
        return self.value


@dataclass(frozen=True)
class RepositoryProfile:
    """The repository parameters of a single channel."""

    channel: Channel
    name: str
    description: str
    origin: str
    dist: str
    component: str
    section: str
    key_url: str

    @property
    def stable(self) -> bool:
        """Whether this profile belongs to the stable channel."""
        return self.channel is Channel.Stable

    @property
    def display_description(self) -> str:
        """The description as used inside sentences."""
        return format_description(self.description)


def format_description(description: str) -> str:
    """Lowercase the first word of a description, e.g. "webmin Releases"."""
    first, sep, rest = description.partition(" ")
    return f"{first.lower()}{sep}{rest}"


@dataclass(frozen=True)
class RepoOptions:
    """Resolved options for a repository setup run."""

    channel: Channel = Channel.Stable
    force: bool = False
    host: str = "download.webmin.com"
    prerelease_host: str = "rc.download.webmin.dev"
    unstable_host: str = "download.webmin.dev"
    key: str = "developers-key.asc"
    key_suffix: str = "webmin-developers"
    name: str | None = None
    description: str | None = None
    component: str = "main"
    section: str = "contrib"
    dist: str = DEFAULT_DIST
    check_binary: str = "/usr/bin/webmin"
    install_message: str = "Webmin and Usermin can be installed with:"
    install_packages: str = "webmin usermin"
    staging_dir: str = "/tmp"

    @property
    def key_url(self) -> str:
        """URL of the signing key; always served from the main host."""
        return f"https://{self.host}/{self.key}"

    def _names(self) -> dict[Channel, str]:
        if self.name is None:
            return {
                Channel.Stable: "webmin-stable",
                Channel.Prerelease: "webmin-prerelease",
                Channel.Unstable: "webmin-unstable",
            }
        return {
            Channel.Stable: self.name,
            Channel.Prerelease: f"{self.name}-prerelease",
            Channel.Unstable: f"{self.name}-unstable",
        }

    def _descriptions(self) -> dict[Channel, str]:
        base = "Webmin" if self.description is None else self.description
        return {
            Channel.Stable: f"{base} Releases",
            Channel.Prerelease: f"{base} Prerelease",
            Channel.Unstable: f"{base} Development Builds",
        }

    def profiles(self) -> dict[Channel, RepositoryProfile]:
        """Build the profile of every channel from these options."""
        names = self._names()
        descriptions = self._descriptions()
        hosts = {
            Channel.Stable: self.host,
            Channel.Prerelease: self.prerelease_host,
            Channel.Unstable: self.unstable_host,
        }
        return {
            channel: RepositoryProfile(
                channel=channel,
                name=names[channel],
                description=descriptions[channel],
                origin=f"https://{hosts[channel]}",
                dist=self.dist,
                component=self.component,
                section=self.section,
                key_url=self.key_url,
            )
            for channel in Channel
        }


def resolve(channel: Channel, options: RepoOptions) -> RepositoryProfile:
    """Return the active profile for a channel.

    Non-stable channels never keep the stable-only distribution label; it is replaced
    by a channel-neutral one.
    """
    profile = options.profiles()[channel]
    if profile.stable:
        return profile
    if profile.dist == DEFAULT_DIST:
        profile = dataclasses.replace(profile, dist=NEUTRAL_DIST)
    return profile
