"""Device discovery, topology hints and pod mutation helpers for Kubernetes device plugins."""

__version__ = "0.19.0"
__all__ = ["containers", "idxd", "sgx_webhook", "topology"]