"""
业务服务层

- ingestion    : 文档入库（提取 → 切分 → 分批向量化 → 写入向量库）与逆操作
- responder    : 检索增强回答（全网/知识库两种模式，流式输出）
- streaming    : 对话流式协调（鉴权、历史、累积、显式保存）
- conversation : 对话与消息管理
- knowledge    : 知识库管理与访问控制
- files        : 文件上传、查询、重新入库与删除
"""
