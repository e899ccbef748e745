from berth.drivers.k8s.k8s import K8sDriver, K8sExecPty

__all__ = ["K8sDriver", "K8sExecPty"]
