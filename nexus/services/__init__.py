"""
Services module - 生成编排、记忆压缩与错误归一化
"""
