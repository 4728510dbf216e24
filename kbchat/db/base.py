"""
SQLAlchemy ORM 基类定义

所有数据库模型都继承自 Base，Base.metadata 收集全部表结构，
供 init_models 建表和 Alembic 生成迁移使用。
"""

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """声明式基类"""
    pass
