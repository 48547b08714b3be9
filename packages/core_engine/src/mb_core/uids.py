import random
from typing import AbstractSet, Optional

MAX_UID = 2 ** 63 - 1


class UidSource:
    """Mints UIDs that never collide with anything already issued.

    Production code uses the system entropy source; fixtures pass a seeded
    ``random.Random`` so generated descriptors are reproducible.
    """

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self._rng = rng if rng is not None else random.SystemRandom()

    @classmethod
    def seeded(cls, seed: int) -> "UidSource":
        return cls(random.Random(seed))

    def mint(self, issued: AbstractSet[int]) -> int:
        while True:
            uid = self._rng.randint(1, MAX_UID)
            if uid not in issued:
                return uid
