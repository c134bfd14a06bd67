"""Error types raised by the registry and its client."""


class RegistryError(Exception):
    """Base class for registry errors."""


class ValidationError(RegistryError):
    """A registration request is missing a required field or carries a bad value."""


class NotFoundError(RegistryError):
    """No instance is registered under the requested id."""


class RegistryConnectionError(RegistryError):
    """The registry HTTP API could not be reached."""
