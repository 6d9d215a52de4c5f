import logging
from dataclasses import dataclass
from typing import Union

from ..errors import NodeRPCError

logger = logging.getLogger("Submission")

SUCCESS = "SUCCESS!"


@dataclass(frozen=True)
class Accepted:
    """The node accepted the block (submitblock returned null)."""

    accepted = True

    @property
    def outcome(self) -> str:
        return SUCCESS


@dataclass(frozen=True)
class Rejected:
    """The node refused the block, or could not be asked."""

    reason: str
    accepted = False

    @property
    def outcome(self) -> str:
        return self.reason


SubmitResult = Union[Accepted, Rejected]


class SubmissionGateway:
    def __init__(self, client):
        self.client = client

    async def submit(self, block_hex: str) -> SubmitResult:
        """Forward a solved block to the node. Never raises for node failures."""
        try:
            response = await self.client.submit_block(block_hex)
        except NodeRPCError as e:
            logger.error("BLOCK SUBMISSION RESPONSE ERROR: %s", e)
            logger.debug("Rejected block hex: %s", block_hex)
            return Rejected(str(e))

        if response is None or response == "":
            result: SubmitResult = Accepted()
        else:
            # BIP22 reasons: "duplicate", "inconclusive", "rejected", ...
            result = Rejected(str(response))
        logger.info("BLOCK SUBMISSION RESPONSE: %s", result.outcome)
        logger.debug("Submitted block hex: %s", block_hex)
        return result
