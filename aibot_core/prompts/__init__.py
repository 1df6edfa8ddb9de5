"""提示词模板加载工具。

提示词正文以 Markdown 文件保存在 prompts/<locale>/ 目录下，
模板中的 {language} 占位符在加载时替换为回答语言。
"""

from functools import lru_cache
from pathlib import Path


PROMPTS_DIR = Path(__file__).resolve().parent


@lru_cache(maxsize=None)
def _read_template(name: str, locale: str) -> str:
    fname = PROMPTS_DIR / locale / f"{name}.md"
    return fname.read_text(encoding="utf-8").strip()


def load_prompt(name: str, language: str, locale: str = "en") -> str:
    """加载模板并填入回答语言。

    目前模板只有 context_preamble 与 response_guidelines 两种。
    """

    return _read_template(name, locale).replace("{language}", language)
