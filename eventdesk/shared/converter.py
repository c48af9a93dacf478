from __future__ import annotations

import logging
import os
import shutil
import signal
import subprocess
import tempfile
import uuid
from io import BytesIO
from typing import Sequence

from PyPDF2 import PdfReader
from PyPDF2.errors import PdfReadError

from .errors import ConverterError, ConverterTimeout, ConverterUnavailable

logger = logging.getLogger("eventdesk.converter")

DEFAULT_TIMEOUT_SECONDS = 180

CONVERTER_CANDIDATES: tuple[str, ...] = (
    "libreoffice",
    "soffice",
    "/usr/bin/libreoffice",
    "/usr/bin/soffice",
    "/opt/libreoffice/program/soffice",
)

_HEADLESS_ENV = {
    "SAL_USE_VCLPLUGIN": "svp",
    "NO_AT_BRIDGE": "1",
    "DBUS_SESSION_BUS_ADDRESS": "",
    "LIBREOFFICE_NOGUI": "1",
}


class Converter:
    """Converts a document between formats via some external tool."""

    def convert(self, source: bytes, source_format: str, target_format: str) -> bytes:
        raise NotImplementedError


def find_converter_executable(candidates: Sequence[str] = CONVERTER_CANDIDATES) -> str:
    for candidate in candidates:
        resolved = shutil.which(candidate)
        if resolved:
            return resolved
    raise ConverterUnavailable(
        "LibreOffice not found. Install LibreOffice and ensure it is on PATH "
        "or in a standard location."
    )


def _kill_process_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
    except OSError:
        proc.kill()


class LibreOfficeConverter(Converter):
    def __init__(self, binary: str | None = None, timeout: int = DEFAULT_TIMEOUT_SECONDS):
        self.binary = binary
        self.timeout = timeout

    def probe(self) -> str:
        if self.binary:
            resolved = shutil.which(self.binary)
            if not resolved:
                raise ConverterUnavailable(f"Converter binary not found: {self.binary}")
            return resolved
        return find_converter_executable()

    def convert(self, source: bytes, source_format: str, target_format: str) -> bytes:
        executable = self.probe()
        source_ext = source_format.lower().lstrip(".")
        target_ext = target_format.lower().lstrip(".")

        with tempfile.TemporaryDirectory(
            prefix="eventdesk-convert-", ignore_cleanup_errors=True
        ) as work_dir:
            out_dir = os.path.join(work_dir, "out")
            os.makedirs(out_dir)
            stem = f"certificate_{uuid.uuid4().hex}"
            source_path = os.path.join(work_dir, f"{stem}.{source_ext}")
            with open(source_path, "wb") as handle:
                handle.write(source)

            args = [
                executable,
                "--headless",
                "--nologo",
                "--nofirststartwizard",
                "--norestore",
                "--convert-to",
                target_ext,
                "--outdir",
                out_dir,
                source_path,
            ]
            logger.info("[CONVERTER] running %s -> %s with %s", source_ext, target_ext, executable)
            self._run(args)

            target_path = os.path.join(out_dir, f"{stem}.{target_ext}")
            if not os.path.isfile(target_path):
                raise ConverterError(
                    f"Converter produced no {target_ext} output for {os.path.basename(source_path)}"
                )
            with open(target_path, "rb") as handle:
                data = handle.read()

        if target_ext == "pdf":
            _check_pdf(data)
        logger.info("[CONVERTER] produced %d bytes of %s", len(data), target_ext)
        return data

    def _run(self, args: list[str]) -> None:
        env = dict(os.environ)
        env.update(_HEADLESS_ENV)
        try:
            proc = subprocess.Popen(
                args,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                start_new_session=True,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ConverterUnavailable(f"Failed to start converter: {exc}") from exc

        try:
            _, stderr = proc.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired as exc:
            _kill_process_group(proc)
            proc.communicate()
            logger.warning("[CONVERTER] timed out after %ss; killed pid=%s", self.timeout, proc.pid)
            raise ConverterTimeout(
                f"Converter timed out after {self.timeout} seconds"
            ) from exc

        if proc.returncode != 0:
            detail = stderr.decode("utf-8", "replace").strip()
            raise ConverterError(
                f"Converter failed (code {proc.returncode}): {detail}"
            )


def _check_pdf(data: bytes) -> None:
    try:
        reader = PdfReader(BytesIO(data))
        pages = len(reader.pages)
    except (PdfReadError, ValueError, OSError) as exc:
        raise ConverterError(f"Converter returned an unreadable PDF: {exc}") from exc
    if pages < 1:
        raise ConverterError("Converter returned an empty PDF")
