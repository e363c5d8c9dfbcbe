import os

SERVICE_NAME = os.getenv("SERVICE_NAME", "localproxy")

# Path space reserved for the control API; never proxied.
CONTROL_PREFIX = os.environ.get("CONTROL_PREFIX", "/proxy").rstrip("/")
FORWARD_PREFIX = CONTROL_PREFIX + "/forward"
TARGET_URL_HEADER = os.environ.get("TARGET_URL_HEADER", "X-Target-URL")

# Set by the listener on every request it hands to the ASGI app
CLIENT_ADDR_HEADER = "x-localproxy-client-addr"
# Set by the listener on requests that arrived in absolute-form (proxy traffic)
ABSOLUTE_FORM_HEADER = "x-localproxy-absolute-form"

NETWORKSETUP_BIN = os.getenv("NETWORKSETUP_BIN", "networksetup")

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
