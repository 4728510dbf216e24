"""
模型混入类 (Mixins)

提供可复用的模型字段，通过多重继承添加到具体模型中。

使用示例：
    class SourceFile(TimestampMixin, SoftDeleteMixin, Base):
        __tablename__ = "files"
        id: Mapped[int] = mapped_column(primary_key=True)
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, false, func
from sqlalchemy.orm import Mapped, mapped_column


class TimestampMixin:
    """
    时间戳混入类

    - created_at: 记录创建时间，由数据库自动设置
    - updated_at: 记录最后更新时间，每次 UPDATE 时自动更新
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """逻辑删除标记，查询时需显式过滤 is_deleted=False"""

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=false(),
        nullable=False,
        index=True,
    )
