"""
mongoguard: resilient client-side access to a MongoDB replica set.

- connection: URL cache and the failover state machine producing handles
- retry: transient error classification and backoff
- tracking: change tracking that turns entity mutations into minimal updates
- repositories: repository façade tying the three together
"""

from .version import __version__

__all__ = ["__version__"]
