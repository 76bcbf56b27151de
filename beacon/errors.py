"""Error taxonomy for beacon.

Configuration-time errors are raised synchronously to whoever is
configuring the component.  Poll-time errors are absorbed by the
scheduler and surfaced only as ``last_error``.
"""

from __future__ import annotations


class BeaconError(Exception):
    """Base error for everything raised by beacon."""


class ConfigurationError(BeaconError):
    """Raised when a configuration is structurally invalid or incomplete."""


class ResolutionError(BeaconError):
    """Raised when a credential or region lookup fails.

    Never escapes :func:`beacon.validation.validate` on its own; it is
    wrapped into a :class:`ConfigurationError` that tells the user what
    to set explicitly.
    """


class PollError(BeaconError):
    """Raised when a single poll cycle against the backend fails."""


class ShutdownError(BeaconError):
    """Raised when work is requested from a scheduler that has stopped."""
