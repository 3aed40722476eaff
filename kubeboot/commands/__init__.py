"""命令模块。"""
