from twisted.internet.defer import ensureDeferred
from twisted.python.failure import Failure


def run(coroutine):
    """
    Drive a coroutine that never waits on the reactor, and return its result.
    """
    results = []
    ensureDeferred(coroutine).addBoth(results.append)
    result = results[0]
    if isinstance(result, Failure):
        result.raiseException()
    return result
