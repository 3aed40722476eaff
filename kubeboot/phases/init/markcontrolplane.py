"""init mark-control-plane 阶段。"""

from kubeboot import options
from kubeboot.phases.init.data import get_init_data
from kubeboot.utils import node
from kubeboot.workflow import Phase

MARK_CONTROL_PLANE_EXAMPLE = """\b
# 为控制平面节点添加标签和污点，具体取值从配置文件读取
kubeboot init phase mark-control-plane --config config.yaml

# 为指定节点添加标签和污点
kubeboot init phase mark-control-plane --node-name myNode
"""


def new_mark_control_plane_phase() -> Phase:
    return Phase(
        name="mark-control-plane",
        short="将节点标记为控制平面",
        example=MARK_CONTROL_PLANE_EXAMPLE,
        inherit_flags=[options.NODE_NAME, options.CFG_PATH],
        run=run_mark_control_plane,
    )


def run_mark_control_plane(c: object) -> None:
    data = get_init_data(c, "mark-control-plane")
    cfg = data.cfg()
    node.mark_control_plane(data.client(), cfg.node_registration.name, cfg.node_registration.taints or [])
