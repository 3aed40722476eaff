"""init 工作流阶段。"""
