"""kubeboot - 集群引导命令行工具。

以可组合阶段的方式引导、加入和重置 Kubernetes 节点。
"""

__version__ = "0.1.0"
