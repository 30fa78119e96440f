import re
from dataclasses import dataclass

from bs4 import BeautifulSoup, NavigableString

_BLOCK_TAGS = ["p", "div", "section", "article", "tr", "blockquote", "pre", "table", "ul", "ol"]
_HEADING_TAGS = ["h1", "h2", "h3", "h4", "h5", "h6"]


@dataclass(frozen=True)
class HtmlDocument:
    title: str
    text: str


def html_to_document(html: str) -> HtmlDocument:
    """Convert an HTML page into a title and readable, markdown-flavoured text."""
    soup = BeautifulSoup(html, "lxml")

    title_tag = soup.find("title")
    title = title_tag.get_text(strip=True) if title_tag else ""

    for tag in soup.find_all(["script", "style", "head", "noscript", "svg", "iframe"]):
        tag.decompose()

    for br in soup.find_all("br"):
        br.replace_with("\n")

    for heading in soup.find_all(_HEADING_TAGS):
        level = int(heading.name[1])
        heading.replace_with(f"\n\n{'#' * level} {heading.get_text(' ', strip=True)}\n\n")

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        label = anchor.get_text(strip=True)
        if href.startswith(("#", "javascript:")):
            continue
        anchor.replace_with(f"[{label}]({href})" if label and label != href else href)

    for item in soup.find_all("li"):
        item.insert(0, NavigableString("\n- "))

    for cell in soup.find_all(["td", "th"]):
        cell.append(NavigableString(" | "))

    for block in soup.find_all(_BLOCK_TAGS):
        block.insert(0, NavigableString("\n"))
        block.append(NavigableString("\n"))

    body = soup.find("body")
    text = (body or soup).get_text()
    return HtmlDocument(title=title, text=_normalize_whitespace(text))


def _normalize_whitespace(text: str) -> str:
    text = text.replace("\xa0", " ")
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()
