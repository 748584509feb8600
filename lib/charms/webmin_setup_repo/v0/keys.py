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

"""Download of the repository signing key.

The key is fetched with whichever of `curl`, `wget` or `fetch` is installed, in that
order. When none is, `curl` is installed through the host's package manager first.

```python
from charms.webmin_setup_repo.v0 import keys

key_path = keys.download_key(
    "https://download.webmin.com/developers-key.asc", "/tmp", host.package_manager
)
```
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from urllib.parse import urlparse

from charms.webmin_setup_repo.v0.base import DownloadError, PackageError, PackageManager, run

logger = logging.getLogger(__name__)

# The unique Charmhub library identifier, never change it
LIBID = "280c02e6855a41e88a56d2bb0358467e"

# Increment this major API version when introducing breaking changes
LIBAPI = 0

# Increment this PATCH version before using `charmcraft publish-lib` or reset
# to 0 if you are raising the major API version
LIBPATCH = 1


CURL = ("/usr/bin/curl", "-f", "-s", "-L", "-O")
# (binary, arguments) in order of preference; all save into the working directory
DOWNLOADERS = (
    CURL,
    ("/usr/bin/wget", "-nv"),
    ("/usr/bin/fetch",),
)


def _executable(path: str) -> bool:
    return os.path.isfile(path) and os.access(path, os.X_OK)


def select_downloader(package_manager: PackageManager) -> tuple[str, ...]:
    """Return the download command to use, installing curl if nothing is available.

    Raises:
        DownloadError if curl had to be installed and could not be
    """
    for downloader in DOWNLOADERS:
        if _executable(downloader[0]):
            return downloader

    logger.info("  Installing required curl from OS repos ..")
    try:
        package_manager.install("curl")
    except PackageError as e:
        logger.info("  .. failed to install 'curl'!")
        raise DownloadError(f"Failed to install 'curl': {e.message}") from None
    logger.info("  .. done")
    return CURL


def download_key(url: str, staging_dir: str, package_manager: PackageManager) -> Path:
    """Download a key into the staging directory.

    Any file left by a previous run is removed first.

    Returns:
        Path of the staged key.

    Raises:
        DownloadError if the key could not be downloaded
    """
    downloader = select_downloader(package_manager)
    staged = Path(staging_dir, os.path.basename(urlparse(url).path))
    if staged.exists():
        staged.unlink()

    logger.info("  Downloading Webmin developers key ..")
    result = run([*downloader, url], cwd=staging_dir)
    if result.returncode != 0:
        output = " ".join(f"{result.stdout}{result.stderr}".split())
        logger.info("  ..failed : %s", output)
        raise DownloadError(f"Failed to download {url} : {output}")
    logger.info("  .. done")
    return staged
