"""Packing of interception files for copying into a container."""

import io
import logging
import posixpath
import tarfile
import time
from pathlib import Path
from typing import Union


logger = logging.getLogger(__name__)

# Everything injected is root-owned and read-only inside the container
OVERRIDE_FILE_MODE = 0o555
CA_FILE_MODE = 0o444


def _tar_name(path: str) -> str:
    # tar stores relative names; put_archive at '/' makes them absolute again
    return posixpath.normpath(path).lstrip("/")


def _lock_down(tarinfo: tarfile.TarInfo) -> tarfile.TarInfo:
    tarinfo.uid = 0
    tarinfo.gid = 0
    tarinfo.uname = "root"
    tarinfo.gname = "root"
    tarinfo.mode = OVERRIDE_FILE_MODE
    return tarinfo


def pack_interception_files(
    source_dir: Union[str, Path],
    cert_content: str,
    overrides_path: str,
    ca_path: str,
) -> io.BytesIO:
    """Build a tar archive of the override files plus the CA certificate.

    Every file under ``source_dir`` is stored below ``overrides_path``.
    The certificate is appended as the final entry at ``ca_path``, and
    the archive is only closed once it has been written.
    """
    source = Path(source_dir)
    if not source.is_dir():
        raise FileNotFoundError(f"Override files directory not found: {source}")

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
        tar.add(str(source), arcname=_tar_name(overrides_path), recursive=True, filter=_lock_down)

        cert_bytes = cert_content.encode("utf-8")
        cert_info = tarfile.TarInfo(_tar_name(ca_path))
        cert_info.size = len(cert_bytes)
        cert_info.mtime = int(time.time())
        cert_info.uid = 0
        cert_info.gid = 0
        cert_info.uname = "root"
        cert_info.gname = "root"
        cert_info.mode = CA_FILE_MODE
        tar.addfile(cert_info, io.BytesIO(cert_bytes))

    logger.debug(f"Packed {source} into {buffer.tell()} byte archive")
    buffer.seek(0)
    return buffer
