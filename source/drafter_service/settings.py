import os
from pathlib import Path
from dotenv import load_dotenv

_ = load_dotenv()

BASE_DIR = Path(__file__).resolve().parent
VM_BASE_DIR = os.environ.get("VM_BASE_DIR", os.path.join(BASE_DIR, "vm_data"))

# Empty means "resolve the drafter binaries from PATH"
DRAFTER_BIN_DIR: str = os.environ.get("DRAFTER_BIN_DIR", "")

HOST_INTERFACE: str = os.environ.get("HOST_INTERFACE", "eth0")
NAMESPACE_PREFIX: str = os.environ.get("NAMESPACE_PREFIX", "ark")
NETNS_DIR: str = os.environ.get("NETNS_DIR", "/var/run/netns")
MAX_INSTANCES: int = int(os.environ.get("MAX_INSTANCES", "10"))
CPU_TEMPLATE: str = os.environ.get("CPU_TEMPLATE", "T2A")

PEER_BASE_PORT: int = int(os.environ.get("PEER_BASE_PORT", "1337"))
PEER_REMOTE_ADDR: str = os.environ.get("PEER_REMOTE_ADDR", "")

FORWARD_HOST: str = os.environ.get("FORWARD_HOST", "127.0.0.1")
FORWARD_BASE_PORT: int = int(os.environ.get("FORWARD_BASE_PORT", "3333"))
FORWARD_INTERNAL_PORT: int = int(os.environ.get("FORWARD_INTERNAL_PORT", "6379"))
FORWARD_PROTOCOL: str = os.environ.get("FORWARD_PROTOCOL", "tcp")

READY_POLL_INTERVAL_S: float = float(os.environ.get("READY_POLL_INTERVAL_S", "0.2"))
READY_MAX_INTERVAL_S: float = float(os.environ.get("READY_MAX_INTERVAL_S", "2.0"))
NETWORK_READY_TIMEOUT_S: float = float(
    os.environ.get("NETWORK_READY_TIMEOUT_S", "30")
)
SNAPSHOT_TIMEOUT_S: float = float(os.environ.get("SNAPSHOT_TIMEOUT_S", "600"))
RESUME_READY_TIMEOUT_S: float = float(os.environ.get("RESUME_READY_TIMEOUT_S", "60"))
FORWARDER_READY_TIMEOUT_S: float = float(
    os.environ.get("FORWARDER_READY_TIMEOUT_S", "15")
)
EXTRACT_TIMEOUT_S: float = float(os.environ.get("EXTRACT_TIMEOUT_S", "600"))

TERMINATE_GRACE_S: float = float(os.environ.get("TERMINATE_GRACE_S", "5"))
STOP_WAIT_S: float = float(os.environ.get("STOP_WAIT_S", "30"))
REQUEST_WAIT_S: float = float(os.environ.get("REQUEST_WAIT_S", "120"))
MONITOR_INTERVAL_S: float = float(os.environ.get("MONITOR_INTERVAL_S", "5"))
TERMINATE_ON_SHUTDOWN: bool = (
    os.environ.get("TERMINATE_ON_SHUTDOWN", "").lower() == "true"
)

NODE_NAME = os.environ.get("NODE_NAME", "local-node")

REDIS_URL: str = os.environ.get("REDIS_URL", "")
REDIS_PREFIX: str = os.environ.get("REDIS_PREFIX", "drafter:")
REDIS_SOCKET_TIMEOUT_S: float = float(os.environ.get("REDIS_SOCKET_TIMEOUT_S", "2"))

AUTH_TOKEN: str = os.environ.get("AUTH_TOKEN", "")

LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")
HOST: str = os.environ.get("HOST", "0.0.0.0")
PORT: int = int(os.environ.get("PORT", "8080"))
