"""Markdown subset renderer for streamed analysis text.

`render()` is called again with the whole accumulated text on every delta, so it
must be pure and must cope with text that stops anywhere, e.g. inside a code
fence or between the two halves of a `**` marker.

Two stages:

1. Blocks, line by line: fenced code first (lines inside a fence are never
   looked at again), then headings (`#`..`###`), `- ` and `1. ` list items,
   blank-line separated paragraphs.
2. Inlines inside headings, list items and paragraphs: code spans are cut out
   first, the remaining text is scanned for `**bold**` before `*italic*`.

Raw text is escaped when HTML is emitted, never before tokenizing, so the
escaping cannot create or break markup.
"""
import html
import re
from dataclasses import dataclass
from typing import List, Tuple, Union

FENCE_OPEN = re.compile(r"^ {0,3}```([^`]*)$")
HEADING = re.compile(r"^(#{1,3}) (.+)$")
BULLET_ITEM = re.compile(r"^- (.+)$")
ORDERED_ITEM = re.compile(r"^\d+\. (.+)$")
CODE_SPAN = re.compile(r"`([^`]+)`")
EMPHASIS = re.compile(r"\*\*([^*]+)\*\*|\*([^*]+)\*")


@dataclass(frozen=True)
class Inline:
    kind: str  # text | code | strong | em
    text: str


Inlines = Tuple[Inline, ...]


@dataclass(frozen=True)
class Heading:
    level: int
    content: Inlines


@dataclass(frozen=True)
class Paragraph:
    content: Inlines


@dataclass(frozen=True)
class ListBlock:
    ordered: bool
    items: Tuple[Inlines, ...]


@dataclass(frozen=True)
class CodeBlock:
    language: str
    code: str
    closed: bool = True


Block = Union[Heading, Paragraph, ListBlock, CodeBlock]


@dataclass(frozen=True)
class Document:
    blocks: Tuple[Block, ...]

    def __len__(self) -> int:
        return len(self.blocks)

    def to_html(self) -> str:
        return "".join(_block_html(block) for block in self.blocks)


def tokenize_inline(text: str) -> Inlines:
    tokens: List[Inline] = []
    pos = 0
    for match in CODE_SPAN.finditer(text):
        tokens.extend(_emphasis_tokens(text[pos:match.start()]))
        tokens.append(Inline("code", match.group(1)))
        pos = match.end()
    tokens.extend(_emphasis_tokens(text[pos:]))
    return tuple(tokens)


def _emphasis_tokens(text: str) -> List[Inline]:
    tokens: List[Inline] = []
    pos = 0
    for match in EMPHASIS.finditer(text):
        if match.start() > pos:
            tokens.append(Inline("text", text[pos:match.start()]))
        if match.group(1) is not None:
            tokens.append(Inline("strong", match.group(1)))
        else:
            tokens.append(Inline("em", match.group(2)))
        pos = match.end()
    if pos < len(text):
        tokens.append(Inline("text", text[pos:]))
    return tokens


def tokenize_blocks(text: str) -> Tuple[Block, ...]:
    lines = text.replace("\r\n", "\n").split("\n")
    blocks: List[Block] = []
    paragraph: List[str] = []
    list_items: List[Inlines] = []
    list_ordered = False

    def flush_paragraph():
        if paragraph:
            blocks.append(Paragraph(tokenize_inline("\n".join(paragraph))))
            paragraph.clear()

    def flush_list():
        if list_items:
            blocks.append(ListBlock(list_ordered, tuple(list_items)))
            list_items.clear()

    i = 0
    while i < len(lines):
        line = lines[i]
        fence = FENCE_OPEN.match(line)
        if fence:
            flush_paragraph()
            flush_list()
            body: List[str] = []
            closed = False
            i += 1
            while i < len(lines):
                if lines[i].strip().startswith("```"):
                    closed = True
                    i += 1
                    break
                body.append(lines[i])
                i += 1
            info = fence.group(1).split()
            blocks.append(CodeBlock(info[0] if info else "", "\n".join(body), closed))
            continue

        i += 1
        if not line.strip():
            flush_paragraph()
            flush_list()
            continue

        heading = HEADING.match(line)
        if heading:
            flush_paragraph()
            flush_list()
            blocks.append(Heading(len(heading.group(1)), tokenize_inline(heading.group(2).rstrip())))
            continue

        item = BULLET_ITEM.match(line) or ORDERED_ITEM.match(line)
        if item:
            flush_paragraph()
            ordered = item.re is ORDERED_ITEM
            if list_items and ordered != list_ordered:
                flush_list()
            list_ordered = ordered
            list_items.append(tokenize_inline(item.group(1)))
            continue

        flush_list()
        paragraph.append(line)

    flush_paragraph()
    flush_list()
    return tuple(blocks)


def render(full_text: str) -> Document:
    return Document(tokenize_blocks(full_text))


def render_html(full_text: str) -> str:
    return render(full_text).to_html()


_INLINE_TAGS = {"code": "code", "strong": "strong", "em": "em"}


def _inline_html(tokens: Inlines) -> str:
    parts = []
    for token in tokens:
        escaped = html.escape(token.text)
        tag = _INLINE_TAGS.get(token.kind)
        parts.append(f"<{tag}>{escaped}</{tag}>" if tag else escaped)
    return "".join(parts)


def _block_html(block: Block) -> str:
    if isinstance(block, Heading):
        return f"<h{block.level}>{_inline_html(block.content)}</h{block.level}>"
    if isinstance(block, Paragraph):
        return f"<p>{_inline_html(block.content)}</p>"
    if isinstance(block, ListBlock):
        tag = "ol" if block.ordered else "ul"
        items = "".join(f"<li>{_inline_html(item)}</li>" for item in block.items)
        return f"<{tag}>{items}</{tag}>"
    lang = f' class="language-{html.escape(block.language)}"' if block.language else ""
    return f"<pre><code{lang}>{html.escape(block.code)}</code></pre>"
