from gpg_forward.config import EXIT_PRECONDITION, EXIT_TRANSPORT_FAILURE


class ForwardError(Exception):
    """Fatal session error; ``exit_code`` is what the process exits with."""

    exit_code = EXIT_PRECONDITION


class PreconditionFailure(ForwardError):
    pass


class InvalidEndpoint(PreconditionFailure):
    pass


class AgentNotFound(PreconditionFailure):
    pass


class MissingDependency(PreconditionFailure):
    pass


class ExportFailed(PreconditionFailure):
    pass


class NoKeyFound(PreconditionFailure):
    pass


class ForkUnsupported(PreconditionFailure):
    pass


class SelectionFailure(ForwardError):
    pass


class BridgeBindFailure(ForwardError):
    pass


class VerificationFailure(ForwardError):
    pass


class TunnelFailure(ForwardError):
    exit_code = EXIT_TRANSPORT_FAILURE
