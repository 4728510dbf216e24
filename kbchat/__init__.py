"""知识库问答服务：文档入库、检索增强生成与流式对话。"""

__version__ = "0.1.0"
