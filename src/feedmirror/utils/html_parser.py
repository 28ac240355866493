"""HTML 解析工具."""

import hashlib
import html
import re

from bs4 import BeautifulSoup


def html_to_text(content: str) -> str:
    """
    将 HTML 转换为纯文本.

    Args:
        content: HTML 内容

    Returns:
        提取的纯文本内容
    """
    if not content:
        return ""

    soup = BeautifulSoup(content, "lxml")

    # 移除 script 和 style 标签
    for element in soup(["script", "style", "nav", "footer", "header"]):
        element.decompose()

    text = soup.get_text(separator="\n")

    lines = []
    for line in text.split("\n"):
        line = line.strip()
        if line:
            lines.append(line)

    text = "\n".join(lines)

    # 合并连续空行
    text = re.sub(r"\n{3,}", "\n\n", text)

    return text.strip()


def decode_html_entities(value: str | None) -> str | None:
    """解码标题、标签名中的 HTML 实体（&amp; -> &）."""
    if value is None:
        return None
    return html.unescape(value)


def content_hash(content: str | None) -> str:
    """原始内容的 SHA-256 摘要，用于判断远端内容是否变化."""
    return hashlib.sha256((content or "").encode("utf-8")).hexdigest()


def slugify(name: str) -> str:
    """把标签名转换成 slug."""
    slug = name.lower()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_-]+", "-", slug)
    return slug.strip("-")
