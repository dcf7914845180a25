from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class ReadWriteLock:
    """Many concurrent readers or one writer.

    Both sections are re-entrant per thread: a writer may run queries and
    nested mutations, and a reader may nest further reads even while a
    writer is queued. Upgrading a read section to a write raises.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers: dict[int, int] = {}
        self._writer: int | None = None
        self._write_depth = 0
        self._waiting_writers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                counted = False
            else:
                counted = True
                if me not in self._readers:
                    while self._writer is not None or self._waiting_writers:
                        self._cond.wait()
                self._readers[me] = self._readers.get(me, 0) + 1
        try:
            yield
        finally:
            if counted:
                with self._cond:
                    depth = self._readers[me] - 1
                    if depth:
                        self._readers[me] = depth
                    else:
                        del self._readers[me]
                        if not self._readers:
                            self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        me = threading.get_ident()
        with self._cond:
            if self._writer == me:
                self._write_depth += 1
            else:
                if me in self._readers:
                    raise RuntimeError("cannot upgrade a read section to a write")
                self._waiting_writers += 1
                try:
                    while self._writer is not None or self._readers:
                        self._cond.wait()
                finally:
                    self._waiting_writers -= 1
                self._writer = me
                self._write_depth = 1
        try:
            yield
        finally:
            with self._cond:
                self._write_depth -= 1
                if self._write_depth == 0:
                    self._writer = None
                    self._cond.notify_all()

    def holds_write(self) -> bool:
        with self._cond:
            return self._writer == threading.get_ident()
