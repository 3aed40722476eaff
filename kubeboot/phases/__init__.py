"""工作流阶段模块。"""
