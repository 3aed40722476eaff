"""节点对象操作。"""

import logging
from typing import Any

import click

from kubeboot import constants
from kubeboot.utils import apiclient
from kubeboot.utils.config import Taint

logger = logging.getLogger(__name__)

CONTROL_PLANE_LABELS = (
    constants.LABEL_NODE_ROLE_OLD_CONTROL_PLANE,
    constants.LABEL_NODE_ROLE_CONTROL_PLANE,
    constants.LABEL_EXCLUDE_FROM_EXTERNAL_LB,
)


def _taint_dict(taint: Taint) -> dict[str, str]:
    result = {"key": taint.key, "effect": taint.effect}
    if taint.value:
        result["value"] = taint.value
    return result


def add_taints(node: dict[str, Any], taints: list[Taint]) -> None:
    """添加污点，key 与 effect 相同的污点只保留一个。"""
    existing = node["spec"].setdefault("taints", [])
    for taint in taints:
        if any(t.get("key") == taint.key and t.get("effect") == taint.effect for t in existing):
            continue
        existing.append(_taint_dict(taint))


def mark_control_plane(client: apiclient.ClusterClient, node_name: str, taints: list[Taint]) -> None:
    """为节点添加控制平面标签和污点。"""
    click.echo(f"[mark-control-plane] 为节点 {node_name} 添加标签: [{' '.join(CONTROL_PLANE_LABELS)}]")
    if taints:
        rendered = " ".join(f"{t.key}:{t.effect}" for t in taints)
        click.echo(f"[mark-control-plane] 为节点 {node_name} 添加污点 [{rendered}]")

    def mutate(node: dict[str, Any]) -> None:
        for label in CONTROL_PLANE_LABELS:
            node["metadata"]["labels"][label] = ""
        add_taints(node, taints)

    apiclient.patch_node(client, node_name, mutate)


def annotate_cri_socket(client: apiclient.ClusterClient, node_name: str, cri_socket: str) -> None:
    """在节点上记录 CRI 套接字，供 reset 等后续操作使用。"""
    logger.debug(f"Annotating node {node_name} with CRI socket {cri_socket}")

    def mutate(node: dict[str, Any]) -> None:
        node["metadata"]["annotations"][constants.ANNOTATION_CRI_SOCKET] = cri_socket

    apiclient.patch_node(client, node_name, mutate)
