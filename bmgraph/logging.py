import inspect
import logging
import os
from pprint import pformat
from typing import Any

from pydantic import BaseModel


class PprintLogger:
    """A logger wrapper that adds pprint support and an optional message prefix.

    The prefix carries per-message context, e.g. ``"[image-extraction] Image 42:"``,
    so every line logged while handling one queue message can be grepped together.
    """

    def __init__(self, logger: logging.Logger, prefix: str | None = None):
        self._logger = logger
        self._prefix = prefix

    def bind(self, prefix: str) -> "PprintLogger":
        """Return a logger writing to the same destination with ``prefix`` prepended."""
        if self._prefix:
            prefix = f"{self._prefix} {prefix}"
        return PprintLogger(self._logger, prefix)

    @property
    def prefix(self) -> str | None:
        return self._prefix

    def _format_message(self, msg: Any, pprint: bool = True) -> str:
        """Format a message, optionally using pprint.

        Pydantic models are rendered with model_dump_json() when pprint=True;
        strings pass through unchanged, other objects go through pformat.
        """
        if not pprint or isinstance(msg, str):
            text = str(msg)
        elif isinstance(msg, BaseModel):
            text = msg.model_dump_json(indent=2)
        else:
            text = pformat(msg, width=120, depth=None)
        if self._prefix:
            return f"{self._prefix} {text}"
        return text

    def debug(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.debug(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def info(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.info(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def warning(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.warning(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def error(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.error(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    def exception(self, msg: Any, *args, pprint: bool = True, **kwargs) -> None:
        self._logger.exception(self._format_message(msg, pprint=pprint), *args, stacklevel=2, **kwargs)

    # Delegate other standard logger methods/attributes
    def __getattr__(self, name: str) -> Any:
        return getattr(self._logger, name)


def level_from_env(default: int = logging.INFO) -> int:
    """Resolve the LOG_LEVEL environment variable (name or number)."""
    raw = os.environ.get("LOG_LEVEL", "").strip()
    if not raw:
        return default
    if raw.isdigit():
        return int(raw)
    level = logging.getLevelName(raw.upper())
    return level if isinstance(level, int) else default


def get_logger(name: str, prefix: str | None = None) -> PprintLogger:
    """Wrap the module logger ``name`` in a PprintLogger."""
    return PprintLogger(logging.getLogger(name), prefix)


def setup_logging(level: int | None = None, name: str | None = None) -> PprintLogger:
    """Set up logging and return a PprintLogger instance.

    The logger is named after ``name`` or, by default, the calling function.
    ``level`` defaults to LOG_LEVEL from the environment.
    """
    if level is None:
        level = level_from_env()
    if name is None:
        frame = inspect.currentframe().f_back  # type: ignore[union-attr]
        name = frame.f_code.co_name  # type: ignore[union-attr]
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        formatter = logging.Formatter("%(asctime)s - %(pathname)s:%(lineno)d - %(levelname)s - %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return PprintLogger(logger)
