from __future__ import annotations

import logging
from typing import Any, MutableMapping, Tuple


class InstanceLogger(logging.LoggerAdapter):
    """
    Prefixes every message with "[<component>::<instance>]".

    `diag()` is for progress/diagnostic output and is dropped unless the
    instance runs with verbose=True. warning/error/exception always pass.
    """

    def __init__(self, logger: logging.Logger, component: str, instance: str, verbose: bool = False):
        super().__init__(logger, {"component": component, "instance": instance})
        self.prefix = f"[{component}::{instance}]"
        self.verbose = bool(verbose)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        return f"{self.prefix} {msg}", kwargs

    def diag(self, msg: str, *args: Any) -> None:
        if self.verbose:
            self.info(msg, *args)


def instance_logger(name: str, component: str, instance: str, verbose: bool = False) -> InstanceLogger:
    return InstanceLogger(logging.getLogger(name), component, instance, verbose)
