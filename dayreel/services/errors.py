"""
Render error taxonomy.

Every terminal problem a render job can hit is one of these categories. The
scheduler turns them into a RenderResult; only DecodeError is recovered
per entry.
"""


class RenderError(Exception):
    """Base class for render pipeline errors."""

    category = "render"
    default_message = "Rendering failed"

    def describe(self) -> str:
        """Message safe to show to API clients (no paths or encoder output)."""
        return self.default_message


class ValidationError(RenderError):
    """Timeline or settings are invalid (empty, out of order, bad duration)."""

    category = "validation"
    default_message = "Invalid render request"

    def describe(self) -> str:
        # Validation messages only ever describe the request itself
        return str(self) or self.default_message


class DecodeError(RenderError):
    """A single image could not be loaded or decoded."""

    category = "decode"
    default_message = "Image could not be decoded"


class EncodeError(RenderError):
    """The encode channel or the external encoder failed."""

    category = "encode"
    default_message = "Video encoding failed"


class SinkClosedError(EncodeError):
    """Frame delivered to a sink after finish() or abort()."""


class ConfigurationError(RenderError):
    """Output violates encoder constraints; caught before invoking the encoder."""

    category = "configuration"
    default_message = "Encoder configuration is invalid"


class ArtifactStoreError(RenderError):
    """The finished artifact could not be persisted."""

    category = "storage"
    default_message = "Rendered video could not be stored"


class RenderCancelled(RenderError):
    """Cooperative cancellation signal. Not a failure."""

    category = "cancelled"
    default_message = "Render cancelled"
