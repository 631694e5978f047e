from __future__ import annotations

import os
import logging
from typing import Optional, Tuple

from flask import Flask

from kaimera.api import create_app
from kaimera.control_plane import DEFAULT_REQUEST_TIMEOUT_S, ControlPlane, load_kube_config
from kaimera.controller import DEFAULT_BACKOFF_BASE_S, DEFAULT_BACKOFF_MAX_S, DEFAULT_RESYNC_S, Controller
from kaimera.reconciler import Reconciler
from kaimera.runtime_policy import load_policy_table

logger = logging.getLogger(__name__)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning(f"Ignoring invalid {name}={raw!r}, using {default}")
        return default


def build_controller() -> Controller:
    """Build the controller from KAIMERA_* environment variables."""
    load_kube_config(os.getenv("KAIMERA_KUBECONFIG") or None)

    control_plane = ControlPlane(
        request_timeout=_env_float("KAIMERA_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_S),
    )

    policies = None
    policy_file = os.getenv("KAIMERA_POLICY_FILE")
    if policy_file:
        policies = load_policy_table(policy_file)
    else:
        logger.info("No runtime policy file configured, using built-in runtimes")

    reconciler = Reconciler(control_plane, policies=policies)
    namespace: Optional[str] = os.getenv("KAIMERA_NAMESPACE") or None
    return Controller(
        control_plane,
        reconciler,
        namespace=namespace,
        resync_seconds=int(_env_float("KAIMERA_RESYNC_SECONDS", DEFAULT_RESYNC_S)),
        backoff_base_s=_env_float("KAIMERA_BACKOFF_BASE", DEFAULT_BACKOFF_BASE_S),
        backoff_max_s=_env_float("KAIMERA_BACKOFF_MAX", DEFAULT_BACKOFF_MAX_S),
    )


def build_app() -> Tuple[Flask, Controller]:
    """Build the probe app and its controller."""
    controller = build_controller()
    return create_app(controller), controller


def main() -> None:
    """
    Run the controller with its probe server.

    The probes are served by Flask's built-in server, single process and
    without the reloader or debugger; they only answer kubelet health checks.
    """
    logging.basicConfig(
        level=os.getenv("KAIMERA_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    app, controller = build_app()
    controller.start()
    try:
        app.run(
            host="0.0.0.0",
            port=int(os.getenv("KAIMERA_PROBE_PORT", "8081")),
            debug=False,
            use_reloader=False,
            threaded=True,
        )
    finally:
        controller.stop()


if __name__ == "__main__":
    main()
