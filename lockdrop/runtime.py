# lockdrop/runtime.py
"""
Process runtime: libsodium initialisation and the shared HTTP session.

A RuntimeProvider is created by the application and handed to whatever
needs the runtime. The first get() builds it; concurrent callers wait on
the same initialisation.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Optional

import requests
from nacl.bindings import sodium_init

from . import __version__


logger = logging.getLogger(__name__)

USER_AGENT = f"Lockdrop/{__version__}"


@dataclass
class Runtime:
    """Initialised process-wide resources."""
    session: requests.Session

    def close(self) -> None:
        self.session.close()


def build_runtime() -> Runtime:
    """Initialise libsodium and open a pooled HTTP session."""
    sodium_init()
    session = requests.Session()
    session.headers.update({"User-Agent": USER_AGENT})
    logger.debug("Runtime initialised")
    return Runtime(session=session)


class RuntimeProvider:
    """Builds a Runtime at most once.

    Args:
        factory: Blocking callable producing the Runtime; runs on a worker
            thread so initialisation never stalls the event loop
    """

    def __init__(self, factory: Callable[[], Runtime] = build_runtime):
        self._factory = factory
        self._runtime: Optional[Runtime] = None
        self._lock: Optional[asyncio.Lock] = None

    @property
    def initialised(self) -> bool:
        return self._runtime is not None

    async def get(self) -> Runtime:
        if self._runtime is None:
            if self._lock is None:
                self._lock = asyncio.Lock()
            async with self._lock:
                if self._runtime is None:
                    self._runtime = await asyncio.to_thread(self._factory)
        return self._runtime

    def close(self) -> None:
        if self._runtime is not None:
            self._runtime.close()
            self._runtime = None
