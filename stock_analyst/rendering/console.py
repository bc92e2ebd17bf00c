"""Turn a rendered Document into rich renderables for the terminal client."""
from rich.console import Group
from rich.syntax import Syntax
from rich.text import Text

from stock_analyst.rendering.markdown import CodeBlock, Document, Heading, Inlines, ListBlock, Paragraph

INLINE_STYLES = {"text": "", "strong": "bold", "em": "italic", "code": "bold cyan"}
HEADING_STYLES = {1: "bold underline magenta", 2: "bold magenta", 3: "bold"}


def inline_text(tokens: Inlines, base_style: str = "") -> Text:
    text = Text(style=base_style)
    for token in tokens:
        text.append(token.text, style=INLINE_STYLES.get(token.kind, ""))
    return text


def document_renderable(document: Document) -> Group:
    parts = []
    for block in document.blocks:
        if isinstance(block, Heading):
            parts.append(inline_text(block.content, HEADING_STYLES[block.level]))
        elif isinstance(block, Paragraph):
            parts.append(inline_text(block.content))
        elif isinstance(block, ListBlock):
            for n, item in enumerate(block.items, 1):
                bullet = f"{n}. " if block.ordered else "• "
                parts.append(Text(bullet) + inline_text(item))
        elif isinstance(block, CodeBlock):
            parts.append(Syntax(block.code, block.language or "text", word_wrap=True))
        parts.append(Text(""))
    return Group(*parts)
