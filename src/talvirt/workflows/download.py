# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/talvirt/workflows/download.py
from __future__ import annotations

import logging
import os
import tarfile
import tempfile
from pathlib import Path

import requests

from talvirt.errors import DownloadError

log = logging.getLogger("talvirt")

_CHUNK = 1024 * 1024


def download_file(url: str, dest: Path, *, timeout: float = 60) -> Path:
    """
    Stream `url` into `dest`. The file is written next to `dest` and renamed into
    place once complete, so an interrupted download never leaves a partial file.
    """
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    log.info("downloading %s -> %s", url, dest)

    fd, tmp_name = tempfile.mkstemp(prefix=f".{dest.name}.", dir=dest.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            with requests.get(url, stream=True, timeout=timeout) as resp:
                resp.raise_for_status()
                for chunk in resp.iter_content(chunk_size=_CHUNK):
                    if chunk:
                        fh.write(chunk)
        os.replace(tmp_name, dest)
    except requests.RequestException as e:
        Path(tmp_name).unlink(missing_ok=True)
        raise DownloadError(f"download of {url} failed: {e}") from e
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
    return dest


def ensure_file(url: str, dest: Path) -> bool:
    """Download only if `dest` is missing. Returns True when a download happened."""
    if Path(dest).is_file():
        print(f"{dest} already exists locally. Skipping download.")
        return False
    print(f"Downloading {url}...")
    download_file(url, dest)
    print(f"Downloaded {dest}.")
    return True


def extract_member(archive: Path, member_name: str, dest_dir: Path) -> Path:
    """
    Pull a single regular file whose basename is `member_name` out of a tarball,
    flattening its directory. Nothing else in the archive is written.
    """
    try:
        with tarfile.open(archive, "r:*") as tar:
            for member in tar.getmembers():
                if member.isfile() and Path(member.name).name == member_name:
                    src = tar.extractfile(member)
                    if src is None:
                        break
                    out = Path(dest_dir) / member_name
                    with src, open(out, "wb") as fh:
                        fh.write(src.read())
                    return out
    except tarfile.TarError as e:
        raise DownloadError(f"cannot read {archive}: {e}") from e
    raise DownloadError(f"{member_name} not found in {archive}")
