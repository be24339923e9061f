# proxy_sieve/config.py

import os

# --- Input Feed Configuration ---
# Remote subscription sources fetched in addition to the local input feed.
# These can be plain text lists, base64 encoded strings, or Clash YAMLs.
PROXY_SOURCES = []

# Timeout for fetching raw proxy content from sources (in seconds)
FETCH_TIMEOUT = 10

# --- Validator Configuration ---
# Every probe sends one request through the proxy to this URL.
# It must answer with a 2xx/3xx status when traffic really egresses.
TEST_URL = "https://www.gstatic.com/generate_204"

# Timeout for one complete probe: runtime startup plus test request (in seconds)
PROXY_CHECK_TIMEOUT = 10

# Maximum number of concurrent proxy checks.
# Every check runs its own runtime process, so keep this within CPU limits.
MAX_CONCURRENT_CHECKS = 50

# Overall wall-clock budget for the probing stage (in seconds).
# Probes still running when it expires are recorded as timeouts.
# Set to None to wait for every probe.
RUN_DEADLINE = None

# --- Xray Runtime Configuration ---
# Path to the xray binary. The XRAY_PATH environment variable takes precedence.
XRAY_PATH = os.environ.get("XRAY_PATH", "xray")

# How long a freshly spawned runtime may take to open its local SOCKS port (in seconds)
XRAY_STARTUP_TIMEOUT = 5

# Grace period between SIGTERM and SIGKILL when stopping a runtime (in seconds)
XRAY_TERMINATE_GRACE = 2

# Log level written into the generated runtime configuration
XRAY_LOG_LEVEL = "error"

# Local ports handed out to runtime instances: [BASE_LOCAL_PORT, BASE_LOCAL_PORT + LOCAL_PORT_RANGE)
BASE_LOCAL_PORT = 10808
LOCAL_PORT_RANGE = 2000

# --- Output Configuration ---
# Directory to save the output files
OUTPUT_DIR = "output"

# Name of the combined group; written as <ALL_GROUP>.txt
ALL_GROUP = "all"

# Base64 encoded copy of the combined list (common subscription format)
BASE64_OUTPUT_FILENAME = "all_base64.txt"

# Filename for the validated proxies in Clash YAML format
CLASH_OUTPUT_FILENAME = "clash.yaml"

# Optional relabelling of published links, e.g. "{protocol}-{rank} [{latency}ms]".
# Available fields: protocol, rank, latency, name, host, port.
# Set to None to publish the original links unchanged.
OUTPUT_LABEL_TEMPLATE = None

# --- Parser Configuration ---
# Keep only links whose parameters match every key/value here, e.g. {"security": "reality"}.
# Empty means no filtering.
WHITELIST_PARAMS = {}

# Query parameters stripped from every link before probing and publishing, e.g. ["note", "spx"].
REMOVE_PARAMS = []

# Repair parameter values that make xray refuse to start (encryption=none=xxx)
# and drop defaults such as type=tcp.
SANITIZE_PARAMS = True
