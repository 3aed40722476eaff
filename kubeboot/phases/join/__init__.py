"""join 工作流阶段。"""
