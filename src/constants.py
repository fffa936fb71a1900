"""Constants used across the reflector and proxy."""

# Annotations recording the route an ingress was created for
ROUTESPEC_ANNOTATION = "hub.jupyter.org/proxy-routespec"
TARGET_ANNOTATION = "hub.jupyter.org/proxy-target"
DATA_ANNOTATION = "hub.jupyter.org/proxy-data"

# Labels identifying proxy-managed objects
PROXY_LABELS = {
    "app": "jupyterhub",
    "component": "singleuser-server",
}

# Namespace file mounted into pods running with a service account
SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"
