#!/usr/bin/env python3
# Copyright 2024 Canonical Ltd.
# See LICENSE file for licensing details.


"""A machine charm that sets up the Webmin package repository."""

import logging

from charms.webmin_setup_repo.v0 import base, setup_repo
from charms.webmin_setup_repo.v0.channels import Channel, RepoOptions
from ops.charm import CharmBase
from ops.main import main
from ops.model import ActiveStatus, BlockedStatus, MaintenanceStatus

logger = logging.getLogger(__name__)

# charm config option -> RepoOptions field
CONFIG_OPTIONS = {
    "host": "host",
    "prerelease-host": "prerelease_host",
    "unstable-host": "unstable_host",
    "key": "key",
    "key-suffix": "key_suffix",
    "name": "name",
    "description": "description",
    "component": "component",
    "section": "section",
    "dist": "dist",
}


class WebminRepoCharm(CharmBase):
    """Keeps the configured Webmin repository set up on the machine."""

    def __init__(self, *args):
        super().__init__(*args)
        self.framework.observe(self.on.install, self._on_setup)
        self.framework.observe(self.on.config_changed, self._on_setup)

    def repo_options(self) -> RepoOptions:
        """Build setup options from the charm config."""
        overrides = {
            field: self.config[option]
            for option, field in CONFIG_OPTIONS.items()
            if self.config.get(option)
        }
        return RepoOptions(
            channel=Channel(self.config.get("channel", "stable")),
            force=True,
            check_binary="",
            **overrides,
        )

    def _on_setup(self, _) -> None:
        try:
            options = self.repo_options()
        except ValueError:
            self.unit.status = BlockedStatus(f"invalid channel: {self.config.get('channel')}")
            return

        self.unit.status = MaintenanceStatus(f"setting up {options.channel} repository")
        try:
            setup_repo.setup(options)
        except base.Error as e:
            logger.error("repository setup failed: %s", e.message)
            self.unit.status = BlockedStatus(e.message)
            return
        self.unit.status = ActiveStatus()


if __name__ == "__main__":
    main(WebminRepoCharm)
