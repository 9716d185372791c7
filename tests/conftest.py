"""
1. Pytest 的插件机制 conftest.py 是 Pytest 的一种特殊配置文件，它会在测试运行时被自动加载。
2. 动态修改模块搜索路径: 把 src 目录加入 sys.path，测试文件可以直接 import langchain_recall。
3. 共享 fixture: 内存存储和可控的 embedding 模型，测试不需要数据库或网络。
"""

import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# 添加 src 目录到 PYTHONPATH
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from langchain_recall.memory.embeddings import EmbeddingService  # noqa: E402
from langchain_recall.memory.store import InMemoryStore  # noqa: E402


def make_embeddings(mapping: dict, default=None) -> EmbeddingService:
    """EmbeddingService whose model returns mapping[text] (or `default`)."""
    model = MagicMock()

    def embed_query(text):
        if text in mapping:
            return mapping[text]
        if default is None:
            raise KeyError(text)
        return default

    model.embed_query.side_effect = embed_query
    return EmbeddingService(model=model)


@pytest.fixture
def store():
    return InMemoryStore()
