import asyncio
import logging
import typing

from acmeissuer.client.challenge import Artifact, ChallengeResolver
from acmeissuer.client.challenge_solver import ChallengeSolver
from acmeissuer.client.exceptions import CouldNotCompleteChallenge
from acmeissuer.client.models import Authorization, Challenge, Order

if typing.TYPE_CHECKING:
    from acmeissuer.client.client import AcmeClient

logger = logging.getLogger(__name__)


class ChallengeOrchestrator:
    """Drives the authorizations of one order to a terminal state.

    Every artifact that is published is removed again before :meth:`complete` returns or raises,
    including on cancellation.
    """

    def __init__(self, client: "AcmeClient", solver: ChallengeSolver):
        self._client = client
        self._solver = solver
        self._resolver = ChallengeResolver(client.account_key)

    def _choose_challenge(self, authorization: Authorization) -> Challenge:
        for challenge_type in self._solver.SUPPORTED_CHALLENGES:
            if challenge := authorization.challenge(challenge_type):
                return challenge

        offered = ", ".join(c.type for c in authorization.challenges)
        raise CouldNotCompleteChallenge(
            authorization,
            f"The server offered the following challenge types for {authorization.identifier} "
            f"but the solver {type(self._solver).__name__} cannot complete any of them: {offered}"
        )

    async def complete(self, order: Order) -> typing.List[Authorization]:
        """Completes all pending authorizations of the given order.

        :param order: The order whose authorizations to complete.
        :raises:

            * :class:`~acmeissuer.client.exceptions.ProviderError` If an artifact could not be published.
            * :class:`~acmeissuer.client.exceptions.ValidationFailure` If an authorization became invalid.
            * :class:`~acmeissuer.client.exceptions.PollingTimeout` If an authorization did not reach
              a terminal state in time.

        :return: The authorizations, all of them valid.
        """
        authorizations = [
            await self._client.authorization_get(url) for url in order.authorizations
        ]

        pending: typing.List[typing.Tuple[Authorization, Challenge, Artifact]] = []
        for authorization in authorizations:
            if authorization.is_valid:
                logger.debug("Authorization for %s is already valid", authorization.identifier)
                continue

            challenge = self._choose_challenge(authorization)
            logger.debug(
                "Chosen challenge type %s for %s, solver: %s",
                challenge.type,
                authorization.identifier,
                type(self._solver).__name__,
            )
            try:
                artifact = self._resolver.resolve(authorization, challenge)
            except ValueError as e:
                raise CouldNotCompleteChallenge(authorization, str(e)) from e
            pending.append((authorization, challenge, artifact))

        if not pending:
            return authorizations

        published: typing.List[Artifact] = []
        try:
            # Sequential, so that values sharing a record name are added rather than replaced.
            for _, _, artifact in pending:
                # Recorded first, the backend may have written the record when the call is interrupted.
                published.append(artifact)
                await self._solver.complete_challenge(artifact)

            await self._solver.wait_for_propagation(published)

            for _, challenge, _ in pending:
                await self._client.challenge_validate(challenge)

            polls = [
                asyncio.ensure_future(self._client.authorization_poll(authorization.url))
                for authorization, _, _ in pending
            ]
            try:
                valid = await asyncio.gather(*polls)
            except BaseException:
                for poll in polls:
                    poll.cancel()
                raise
        finally:
            await self._cleanup(published)

        by_url = {authorization.url: authorization for authorization in valid}
        return [by_url.get(a.url, a) for a in authorizations]

    async def _cleanup(self, artifacts: typing.List[Artifact]) -> None:
        cancelled = False
        for artifact in artifacts:
            try:
                # Shielded, so that a cancelled issuance still removes its records.
                await asyncio.shield(self._solver.cleanup_challenge(artifact))
            except asyncio.CancelledError:
                logger.warning("Cleanup of %s was interrupted by cancellation", artifact)
                cancelled = True
            except Exception:
                logger.warning("Could not clean up %s", artifact, exc_info=True)

        if cancelled:
            raise asyncio.CancelledError()
