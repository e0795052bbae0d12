"""Auxiliary service contract and engine environment flag injection.

An auxiliary service (typically a local web server serving test assets)
is started before the engine and must report its base addresses once it
is ready. The addresses reach the guest as ``--setenv`` engine flags.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from wasi_harness.cancellation import CancellationSignal
    from wasi_harness.models import ExecutionRequest, ServerUrls


@runtime_checkable
class AuxiliaryService(Protocol):
    """Service started before the engine and stopped after the run."""

    async def start(self, cancellation: CancellationSignal) -> ServerUrls:
        """Start the service and return its addresses once it is ready."""
        ...

    async def stop(self) -> None:
        """Stop the service. Must be safe to call after a failed start."""
        ...


def build_setenv_flags(request: ExecutionRequest, urls: ServerUrls) -> list[str]:
    """Build ``--setenv=NAME=VALUE`` flags binding service addresses.

    Every name in ``request.http_env_vars`` is bound to the HTTP address.
    When ``request.use_https`` is set, every name in
    ``request.https_env_vars`` is bound to the HTTPS address.

    Args:
        request: The execution request naming the variables.
        urls: Addresses reported by the ready service.

    Returns:
        The flags, HTTP bindings first.

    Raises:
        ValueError: If HTTPS bindings are requested but the service has no
            HTTPS address.
    """
    flags = [f"--setenv={name}={urls.http}" for name in request.http_env_vars]
    if request.use_https and request.https_env_vars:
        if urls.https is None:
            msg = "HTTPS environment variables requested but the service has no HTTPS address"
            raise ValueError(msg)
        flags.extend(f"--setenv={name}={urls.https}" for name in request.https_env_vars)
    return flags
