"""reset 工作流阶段。"""
