"""Object store backends: in-process and Kubernetes API server."""
