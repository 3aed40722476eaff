"""工作流错误模块。

定义阶段运行器在过滤、校验和执行阶段时抛出的异常。
"""


class WorkflowError(Exception):
    """工作流错误基类。"""


class UnknownPhaseError(WorkflowError):
    """过滤或跳过列表中的阶段名称不存在。"""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"invalid phase name: {name}")


class InvalidPhaseConfigurationError(WorkflowError):
    """标记为 run_all_siblings 的阶段同时声明了 run 或 run_if。"""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"phase marked as RunAllSiblings can not have Run functions {name}")


class PhaseConditionError(WorkflowError):
    """阶段的运行条件求值失败。"""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"error execution run condition for phase {name}: {cause}")


class PhaseExecutionError(WorkflowError):
    """阶段动作执行失败。"""

    def __init__(self, name: str, cause: BaseException) -> None:
        self.name = name
        self.cause = cause
        super().__init__(f"error execution phase {name}: {cause}")


class ContextInitializationError(WorkflowError):
    """共享运行数据初始化失败。"""

    def __init__(self, cause: BaseException) -> None:
        self.cause = cause
        super().__init__(str(cause))
