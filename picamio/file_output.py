"""Write encoded output to a file, optionally split into numbered segments."""

from __future__ import annotations

import logging
import sys

from .output import Output, OutputFlag

logger = logging.getLogger(__name__)

_MAX_FILENAME = 255


def _ms(timestamp_us: int) -> int:
    quotient = abs(timestamp_us) // 1000
    return -quotient if timestamp_us < 0 else quotient


def _format_filename(pattern: str, count: int) -> str:
    try:
        name = pattern % count
    except TypeError:
        try:
            name = pattern % ()
        except (TypeError, ValueError) as exc:
            raise RuntimeError("failed to generate filename") from exc
    except ValueError as exc:
        raise RuntimeError("failed to generate filename") from exc
    return name[:_MAX_FILENAME]


class FileOutput(Output):
    """Write buffers to ``options.output``, which may hold a printf-style counter."""

    def __init__(self, options):
        super().__init__(options)
        self._fp = None
        self._owns_fp = False
        self._count = 0
        self._file_start_time_ms = 0

    def output_buffer(self, mem, timestamp_us: int, flags: OutputFlag) -> None:
        opts = self.options
        if (
            self._fp is None
            or (opts.segment and flags & OutputFlag.KEYFRAME
                and _ms(timestamp_us) - self._file_start_time_ms > opts.segment)
            or (opts.split and flags & OutputFlag.RESTART)
        ):
            self._close_file()
            self._open_file(timestamp_us)

        data = memoryview(mem)
        logger.debug("FileOutput: output buffer size %d", data.nbytes)
        if self._fp is not None and data.nbytes:
            try:
                self._fp.write(data)
            except OSError as exc:
                raise RuntimeError("failed to write output bytes") from exc
            if opts.flush:
                self._fp.flush()

    def _open_file(self, timestamp_us: int) -> None:
        output = self.options.output
        if output == "-":
            self._fp = sys.stdout.buffer
            self._owns_fp = False
        elif output:
            filename = _format_filename(output, self._count)
            self._count += 1
            if self.options.wrap:
                self._count %= self.options.wrap
            try:
                self._fp = open(filename, "wb")
            except OSError as exc:
                raise RuntimeError("failed to open output file " + filename) from exc
            self._owns_fp = True
            logger.debug("FileOutput: opened output file %s", filename)
            self._file_start_time_ms = _ms(timestamp_us)

    def _close_file(self) -> None:
        if self._fp is None:
            return
        if self.options.flush:
            self._fp.flush()
        if self._owns_fp:
            self._fp.close()
        self._fp = None

    def close(self) -> None:
        self._close_file()
        super().close()