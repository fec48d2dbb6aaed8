# shipyard/procutil.py
"""
Process helpers built on psutil.

Liveness treats zombies as dead: a zombie has exited and only waits to be
collected, so it can neither hold a lock nor make progress.
"""

import logging

import psutil

logger = logging.getLogger(__name__)


def pid_alive(pid: int | None) -> bool:
    """True when pid names a running (non-zombie) process."""
    if not pid or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        return proc.status() != psutil.STATUS_ZOMBIE
    except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
        # AccessDenied means it exists but belongs to someone else
        return psutil.pid_exists(pid) and not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.ZombieProcess:
        return True
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return False


def terminate_process_tree(pid: int, grace_s: float = 10.0) -> bool:
    """
    Stop a process and its descendants: SIGTERM, then SIGKILL after grace_s.

    Returns:
        True if nothing in the tree is still running afterwards
    """
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return True

    try:
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return True

    for proc in procs:
        try:
            proc.terminate()
        except psutil.NoSuchProcess:
            pass

    _, alive = psutil.wait_procs(procs, timeout=grace_s)
    if alive:
        logger.warning(f"Force-killing {len(alive)} process(es) in tree of PID {pid}")
        for proc in alive:
            try:
                proc.kill()
            except psutil.NoSuchProcess:
                pass
        _, alive = psutil.wait_procs(alive, timeout=max(grace_s, 1.0))

    still_running = [p for p in alive if pid_alive(p.pid)]
    return not still_running


def process_usage(pid: int) -> tuple[float, float]:
    """Return (rss_mb, cpu_percent) for pid, or zeros if it cannot be read."""
    try:
        proc = psutil.Process(pid)
        rss_mb = proc.memory_info().rss / (1024 * 1024)
        cpu = proc.cpu_percent(interval=None)
        return round(rss_mb, 1), round(cpu, 1)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return 0.0, 0.0


def decode_output(data: bytes | str | None) -> str:
    """Text of captured subprocess output; undecodable bytes become U+FFFD."""
    if data is None:
        return ""
    if isinstance(data, bytes):
        return data.decode("utf-8", errors="replace")
    return data
