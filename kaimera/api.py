from __future__ import annotations

from typing import Any, Optional

from flask import Flask, jsonify

from kaimera.controller import Controller


def create_app(controller: Optional[Controller] = None) -> Flask:
    app = Flask(__name__)
    # Store the controller in app config so probes can reach it
    app.config['controller'] = controller

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok"})

    @app.get("/readyz")
    def readyz() -> Any:
        controller = app.config['controller']
        if controller is None or not controller.is_running():
            return jsonify({"status": "not ready"}), 503
        return jsonify({"status": "ready"})

    @app.get("/status")
    def status() -> Any:
        """Last reconcile outcome per ModelDeployment."""
        controller = app.config['controller']
        if controller is None:
            return jsonify({"error": "controller not configured"}), 503

        items = []
        for request, result in sorted(controller.results().items(), key=lambda kv: str(kv[0])):
            items.append({
                "namespace": request.namespace,
                "name": request.name,
                "ok": result.ok,
                "requeue": result.requeue,
                "error": str(result.error) if result.error is not None else None,
                "actions": [
                    {"kind": a.kind, "verb": a.verb, "name": a.name}
                    for a in result.actions
                ],
            })
        return jsonify({
            "running": controller.is_running(),
            "queued": len(controller.queue),
            "delayed": controller.queue.delayed(),
            "items": items,
        })

    return app
