import asyncio
from typing import Dict, Optional


class StaticKeys:
    """Public key lookup over a fixed table; records who was asked for."""

    def __init__(self, table: Dict[str, Optional[str]]):
        self.table = table
        self.asked = []

    async def get(self, identity: str) -> Optional[str]:
        self.asked.append(identity)
        return self.table.get(identity)


def run(coro):
    return asyncio.run(coro)
