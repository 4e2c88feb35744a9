"""
Utils - 工具函数
"""
