"""RelayGate: HTTP front end for an LLM reverse-proxy gateway.

RelayGate terminates client connections, runs every request through an
ordered filter chain and hands it to the info, admin and proxy route groups.

Key features:
    - Ordered filter chain (request context, access logging, health check,
      CORS, bounded body parsing, origin validation)
    - Staged startup (build info, config validation, subsystem init, listener)
    - Fault boundary that always answers with JSON
    - Process-wide crash containment

Example:
    >>> from relaygate.config import load_config
    >>> from relaygate.startup import StartupOrchestrator
    >>> orchestrator = StartupOrchestrator(load_config())
    >>> asyncio.run(orchestrator.serve())  # doctest: +SKIP
"""

__all__ = ["__version__"]

__version__ = "0.3.0"
