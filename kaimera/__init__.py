"""
kaimera model-deployment controller package.

Modules:
- types: ModelDeployment custom resource (kaimera.ai/v1)
- runtime_policy: runtime selector -> image, tolerations, resource limits
- builder: desired Deployment and Service for a ModelDeployment
- ownership: controller owner references on generated children
- control_plane: Kubernetes API access for ModelDeployments and children
- reconciler: create-or-replace of each child, probed independently
- controller: watches and the per-identity work queue
- api: health, readiness and status endpoints
"""
