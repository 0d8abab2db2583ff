"""服务层：代码仓后端、构建、包管理流水线"""
