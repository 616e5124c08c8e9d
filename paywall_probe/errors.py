"""
Error taxonomy for the probing engine.
"""


class ProbeError(Exception):
    """Base class for all probe errors."""


class NavigationError(ProbeError):
    """Target page unreachable or navigation deadline exceeded."""

    def __init__(self, url: str, reason: str):
        self.url = url
        self.reason = reason
        super().__init__(f"navigation to {url} failed: {reason}")


class ProbeChannelError(ProbeError):
    """A single channel could not reach a conclusion (I/O, parse, timeout)."""

    def __init__(self, channel: str, reason: str):
        self.channel = channel
        self.reason = reason
        super().__init__(f"[{channel}] {reason}")


class ClassificationInputError(ProbeError):
    """Content reaching the classifier could not be turned into text."""


class ArtifactWriteError(ProbeError):
    """Persisting a content artifact failed."""

    def __init__(self, fingerprint: str, reason: str):
        self.fingerprint = fingerprint
        self.reason = reason
        super().__init__(f"could not write artifact {fingerprint[:16]}: {reason}")
