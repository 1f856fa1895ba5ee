"""copybot: mirror a remote trading agent's futures positions onto a local account."""

__version__ = "0.1.0"
