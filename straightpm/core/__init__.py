"""核心层：配方、构建缓存、过期检测、事务与会话"""
