"""forge_build - reconciling controller for declarative machine-image builds."""

__version__ = "0.1.0"
