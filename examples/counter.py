"""
A handler that counts to 5, one number per second.

This is an example of a handler that waits on something without blocking the
server. The handler returns a coroutine, and the server awaits it while other
requests are processed in the meantime. Load it with:

    modules = ["/path/to/lodestar/examples"]

    hosts = {
        "localhost": {
            ...
            "handlers": [
                {"path": "^/count/deferred$", "module": "counter"},
                {"path": "^/count/threaded$", "module": "counter", "threaded": True},
            ],
        },
    }
"""
import time

from twisted.internet import reactor
from twisted.internet.task import deferLater
from twisted.internet.threads import deferToThread

from lodestar import Status


def blocking_count(count):
    """
    Runs in the twisted thread pool, so time.sleep() only blocks this thread.
    """
    lines = []
    for x in range(count):
        time.sleep(1)
        lines.append(f"{x}\n")
    return "".join(lines)


async def deferred_count(count):
    """
    Equivalent to asyncio.sleep(1) between every number.
    """
    lines = []
    for x in range(count):
        await deferLater(reactor, 1, lambda: None)
        lines.append(f"{x}\n")
    return "".join(lines)


def init(entry):
    entry.state["count"] = int(entry.get("count", 5))


async def handle(entry, count):
    if entry.get("threaded"):
        body = await deferToThread(blocking_count, count)
    else:
        body = await deferred_count(count)
    return Status.SUCCESS, "text/plain", body


def handler(entry, auth, request, captures):
    return handle(entry, entry.state["count"])
