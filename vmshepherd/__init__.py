"""vmshepherd: bounded-retry VM provisioning across IaaS providers."""

__version__ = "0.1.0"
