from waylog.state.seeding import seed_from_archives
from waylog.state.store import StateStore

__all__ = [
    "StateStore",
    "seed_from_archives",
]
