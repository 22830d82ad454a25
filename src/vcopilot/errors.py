class VCopilotError(Exception):
    """Base class for every error raised by vcopilot."""


class CredentialAbsentError(VCopilotError):
    pass


class DeviceFlowError(VCopilotError):
    pass


class DeviceFlowTimeoutError(DeviceFlowError):
    pass


class SessionExchangeError(VCopilotError):
    pass


class NoSubscriptionError(SessionExchangeError):
    pass


class RemoteApiError(VCopilotError):
    pass


class StreamTransportError(RemoteApiError):
    pass


class InteractiveError(VCopilotError):
    pass


class ExtensionNotConnectedError(InteractiveError):
    pass


class PageNotFoundError(InteractiveError):
    pass


class WatcherDeadError(InteractiveError):
    pass


class JobVanishedError(InteractiveError):
    pass


class JobFailedError(InteractiveError):
    pass


class JobTimeoutError(InteractiveError):
    pass
