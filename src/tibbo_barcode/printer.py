"""Render labels and submit them to the print spooler."""

from __future__ import annotations

import asyncio
import contextlib
import time
from pathlib import Path
from typing import Optional

from .config import Config
from .errors import PrintSubmissionFailure, RenderFailure
from .health import HealthMonitor
from .labels import LabelLayout, LabelRenderer
from .logging import get_logger
from .metrics import observe_print


class LabelPrinter:
    """Render a label PDF and hand it to ``lpr``."""

    def __init__(
        self,
        config: Config,
        renderer: Optional[LabelRenderer] = None,
        health: Optional[HealthMonitor] = None,
    ) -> None:
        self.config = config
        self.renderer = renderer or LabelRenderer(
            config.label_dir,
            LabelLayout(width=config.label_width, height=config.label_height),
        )
        self.logger = get_logger("tibbo.printer")
        self._health = health

    async def render(self, label_type: str, address: str) -> Path:
        """Render a label off the event loop. Raises :class:`RenderFailure`."""

        return await asyncio.to_thread(self.renderer.render, label_type, address)

    async def submit(self, path: Path) -> None:
        """Submit a rendered label. Raises :class:`PrintSubmissionFailure`."""

        if self.config.dry_run:
            self.logger.info(
                "Dry run; skipping print submission",
                extra={"printer": self.config.printer, "path": str(path)},
            )
            return
        command = [str(self.config.lpr_command), "-P", self.config.printer, str(path)]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise PrintSubmissionFailure(f"Cannot run {command[0]}: {exc}") from exc
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.config.print_timeout
            )
        except asyncio.TimeoutError as exc:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            raise PrintSubmissionFailure(
                f"{command[0]} did not finish within {self.config.print_timeout}s"
            ) from exc
        if process.returncode != 0:
            output = "\n".join(
                part.decode("utf-8", "replace").strip() for part in (stdout, stderr) if part.strip()
            )
            raise PrintSubmissionFailure(
                f"{command[0]} exited with {process.returncode}: {output or 'no output'}"
            )

    async def print_label(self, label_type: str, address: str) -> Path:
        """Render and submit a label, returning the rendered file.

        Raises :class:`RenderFailure` or :class:`PrintSubmissionFailure`.
        """

        started = time.perf_counter()
        result = "cancelled"
        context = {"label_type": label_type, "address": address}
        try:
            try:
                path = await self.render(label_type, address)
            except RenderFailure as exc:
                result = "render_failed"
                self.logger.error("Could not generate label", extra={**context, "error": str(exc)})
                await self._record_failure(exc)
                raise
            try:
                await self.submit(path)
            except PrintSubmissionFailure as exc:
                result = "print_failed"
                self.logger.error(
                    "Could not print label",
                    extra={**context, "printer": self.config.printer, "error": str(exc)},
                )
                await self._record_failure(exc)
                raise
            result = "ok"
        finally:
            observe_print(result, time.perf_counter() - started)
        if self._health:
            await self._health.record_success("printer")
        self.logger.info("Printed label", extra={**context, "printer": self.config.printer})
        return path

    async def render_and_print(self, label_type: str, address: str) -> bool:
        """Render and print a label, returning whether both steps succeeded."""

        try:
            await self.print_label(label_type, address)
        except (RenderFailure, PrintSubmissionFailure):
            return False
        return True

    async def _record_failure(self, exc: BaseException) -> None:
        if self._health:
            await self._health.record_failure("printer", exc)
