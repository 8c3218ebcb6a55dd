import subprocess
from typing import Iterable


def run_checked(cmd: Iterable[str], timeout: float, log_path: str | None = None) -> None:
    """subprocess.run with check=True; output goes to `log_path` when given."""
    if log_path is None:
        subprocess.run(list(cmd), check=True, timeout=timeout, capture_output=True)
        return
    with open(log_path, "ab") as log:
        subprocess.run(
            list(cmd),
            check=True,
            timeout=timeout,
            stdin=subprocess.DEVNULL,
            stdout=log,
            stderr=subprocess.STDOUT,
        )
