from .client import AcmeClient
from .challenge import ChallengeResolver, Dns01Artifact, Http01Artifact
from .challenge_solver import ChallengeSolver, Dns01Solver, DummySolver, Http01Solver
from .exceptions import (
    AcmeClientException,
    CouldNotCompleteChallenge,
    PollingTimeout,
    ProtocolError,
    ProviderError,
    Step,
    TransportError,
    ValidationFailure,
)
from .keys import AccountKey
from .models import CertificateBundle
from .session import ACME_DIRECTORIES

__all__ = [
    "ACME_DIRECTORIES",
    "AccountKey",
    "AcmeClient",
    "AcmeClientException",
    "CertificateBundle",
    "ChallengeResolver",
    "ChallengeSolver",
    "CouldNotCompleteChallenge",
    "Dns01Artifact",
    "Dns01Solver",
    "DummySolver",
    "Http01Artifact",
    "Http01Solver",
    "PollingTimeout",
    "ProtocolError",
    "ProviderError",
    "Step",
    "TransportError",
    "ValidationFailure",
]
