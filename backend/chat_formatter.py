"""
输出格式化器 - 将Cursor对话记录还原为可显示、可导出的格式

这个模块负责:
1. 从bubble记录中提取消息文本 (text / richText / codeBlocks)
2. 将请求上下文和工具操作记录格式化为Markdown片段
3. 将对话转换为Markdown、HTML或JSON导出内容
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ChatBubble:
    """单条消息"""
    type: str  # 'user' or 'ai'
    text: str
    timestamp: Optional[float] = None


@dataclass
class ChatTab:
    """完整对话"""
    id: str
    title: str
    timestamp: Optional[float] = None
    bubbles: List[ChatBubble] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _parse_embedded(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


def extract_text_from_rich_text(children: List[Any]) -> str:
    text = ""
    for child in children:
        if not isinstance(child, dict):
            continue
        if child.get("type") == "text" and child.get("text"):
            text += child["text"]
        elif child.get("type") == "code" and isinstance(child.get("children"), list):
            text += "\n```\n"
            text += extract_text_from_rich_text(child["children"])
            text += "\n```\n"
        elif isinstance(child.get("children"), list):
            text += extract_text_from_rich_text(child["children"])
    return text


def extract_text_from_bubble(bubble: Dict[str, Any]) -> str:
    text = ""
    raw_text = bubble.get("text")
    if isinstance(raw_text, str) and raw_text.strip():
        text = raw_text

    if not text and bubble.get("richText"):
        try:
            rich = _parse_embedded(bubble["richText"])
            root = rich.get("root") if isinstance(rich, dict) else None
            children = root.get("children") if isinstance(root, dict) else None
            if isinstance(children, list):
                text = extract_text_from_rich_text(children)
        except ValueError as e:
            logger.debug(f"Error parsing richText: {e}")

    code_blocks = bubble.get("codeBlocks")
    if isinstance(code_blocks, list):
        for block in code_blocks:
            if isinstance(block, dict) and block.get("content"):
                text += f"\n\n```{block.get('language') or ''}\n{block['content']}\n```"

    return text


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def _label(item: Any, *keys: str, default: str = "") -> str:
    """First non-empty field of a dict item, or the item itself when it is a plain value."""
    if isinstance(item, dict):
        for key in keys:
            if item.get(key):
                return str(item[key])
        return default
    return str(item) if item not in (None, "") else default


def format_request_context(context: Dict[str, Any]) -> str:
    """Git status, terminal files, attached folders, rules and related chats of one request."""
    result = ""

    if context.get("gitStatusRaw"):
        result += f"\n\n**Git Status:**\n```\n{context['gitStatusRaw']}\n```"

    terminal_files = _as_list(context.get("terminalFiles"))
    if terminal_files:
        result += "\n\n**Terminal Files:**"
        for f in terminal_files:
            result += f"\n- {_label(f, 'path')}"

    folders = _as_list(context.get("attachedFoldersListDirResults"))
    if folders:
        result += "\n\n**Attached Folders:**"
        for folder in folders:
            if isinstance(folder, dict) and folder.get("files"):
                result += f"\n\n**Folder:** {folder.get('path') or 'Unknown'}"
                for f in _as_list(folder["files"]):
                    if isinstance(f, dict):
                        result += f"\n- {f.get('name')} ({f.get('type')})"
                    else:
                        result += f"\n- {f}"

    rules = _as_list(context.get("cursorRules"))
    if rules:
        result += "\n\n**Cursor Rules:**"
        for rule in rules:
            result += f"\n- {_label(rule, 'name', 'description', default='Rule')}"

    composers = _as_list(context.get("summarizedComposers"))
    if composers:
        result += "\n\n**Related Conversations:**"
        for composer in composers:
            result += f"\n- {_label(composer, 'name', 'composerId', default='Conversation')}"

    return result


def _format_tool_call(action: Dict[str, Any]) -> str:
    result = f"\n\n**Tool Action:** {action['toolName']}"

    if action.get("parameters"):
        try:
            params = _parse_embedded(action["parameters"])
            if isinstance(params, dict):
                if params.get("command"):
                    result += f"\n**Command:** `{params['command']}`"
                if params.get("target_file"):
                    result += f"\n**File:** {params['target_file']}"
                if params.get("query"):
                    result += f"\n**Query:** {params['query']}"
                if params.get("instructions"):
                    result += f"\n**Instructions:** {params['instructions']}"
        except ValueError as e:
            logger.warning(f"Error parsing tool parameters: {e}")

    if action.get("result"):
        try:
            data = _parse_embedded(action["result"])
            if isinstance(data, dict):
                if data.get("output"):
                    result += f"\n\n**Output:**\n```\n{data['output']}\n```"
                if data.get("contents"):
                    result += f"\n\n**File Contents:**\n```\n{data['contents']}\n```"
                if data.get("exitCodeV2") is not None:
                    result += f"\n\n**Exit Code:** {data['exitCodeV2']}"
                files = _as_list(data.get("files"))
                if files:
                    result += "\n\n**Files Found:**"
                    for f in files:
                        if isinstance(f, dict):
                            result += f"\n- {_label(f, 'name', 'path')} ({f.get('type') or 'file'})"
                        else:
                            result += f"\n- {f} (file)"
                results = _as_list(data.get("results"))
                if results:
                    result += "\n\n**Results:**"
                    for item in results:
                        if isinstance(item, dict) and item.get("file") and item.get("content"):
                            result += f"\n\n**File:** {item['file']}"
                            result += f"\n```\n{item['content']}\n```"
        except ValueError as e:
            logger.warning(f"Error parsing tool result: {e}")

    return result


def _lines(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    return [str(value)] if value else []


def format_tool_action(action: Dict[str, Any]) -> str:
    """Render one codeBlockDiff record as Markdown; empty string when nothing is known."""
    if not isinstance(action, dict):
        return ""

    result = ""

    for diff in _as_list(action.get("newModelDiffWrtV0")):
        modified = _lines(diff.get("modified")) if isinstance(diff, dict) else []
        if modified:
            result += "\n\n**Code Changes:**\n```\n" + "\n".join(modified) + "\n```"

    if action.get("filePath"):
        result += f"\n\n**File:** {action['filePath']}"
    if action.get("command"):
        result += f"\n\n**Command:** `{action['command']}`"
    if action.get("searchResults"):
        result += f"\n\n**Search Results:**\n{action['searchResults']}"
    if action.get("webResults"):
        result += f"\n\n**Web Search:**\n{action['webResults']}"

    if action.get("toolName"):
        result += _format_tool_call(action)

    actions_taken = _lines(action.get("actionsTaken"))
    if actions_taken:
        result += f"\n\n**Actions Taken:** {', '.join(actions_taken)}"
    files_modified = _lines(action.get("filesModified"))
    if files_modified:
        result += "\n\n**Files Modified:**"
        for f in files_modified:
            result += f"\n- {f}"
    if action.get("gitStatus"):
        result += f"\n\n**Git Status:**\n```\n{action['gitStatus']}\n```"
    if action.get("directoryListed"):
        result += f"\n\n**Directory Listed:** {action['directoryListed']}"
    web_results = [i for i in _as_list(action.get("webSearchResults")) if isinstance(i, dict) and i.get("title")]
    if web_results:
        result += "\n\n**Web Search Results:**"
        for item in web_results:
            result += f"\n- {item['title']}"

    return result


################################################################################
# Export
################################################################################
def _format_timestamp(timestamp: Optional[float]) -> str:
    if not timestamp:
        return "Unknown date"
    try:
        # Cursor stores milliseconds
        seconds = timestamp / 1000 if timestamp > 10000000000 else timestamp
        return datetime.fromtimestamp(seconds).strftime("%Y-%m-%d %H:%M:%S")
    except (OverflowError, OSError, ValueError) as e:
        logger.warning(f"Error formatting date: {e}")
        return "Unknown date"


def convert_chat_to_markdown(tab: ChatTab) -> str:
    markdown = f"# {tab.title or f'Chat {tab.id}'}\n\n"
    markdown += f"_Created: {_format_timestamp(tab.timestamp)}_\n\n---\n\n"

    if not tab.bubbles:
        return markdown + "_No messages in this conversation._\n\n"

    for bubble in tab.bubbles:
        markdown += f"### {'AI' if bubble.type == 'ai' else 'User'}\n\n"
        if bubble.text:
            markdown += bubble.text + "\n\n"
        elif bubble.type == "ai":
            markdown += "_[TERMINAL OUTPUT NOT INCLUDED]_\n\n"
        markdown += "---\n\n"
    return markdown


def _escape_html(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _render_message_html(content: str) -> str:
    processed = ""
    in_code_block = False
    for line in _escape_html(content).split("\n"):
        if line.strip().startswith("```"):
            if not in_code_block:
                processed += "<pre><code>"
                in_code_block = True
                continue
            processed += "</code></pre>\n"
            in_code_block = False
            continue

        if in_code_block:
            processed += line + "\n"
        else:
            processed += line + "<br>"

    if in_code_block:
        processed += "</code></pre>"
    return processed


def convert_chat_to_html(tab: ChatTab) -> str:
    title = _escape_html(tab.title or f"Chat {tab.id}")

    messages_html = ""
    if not tab.bubbles:
        messages_html = "<p>No messages found in this conversation.</p>"
    for bubble in tab.bubbles:
        name = "AI" if bubble.type == "ai" else "User"
        border_color = "#00796b" if bubble.type == "ai" else "#3f51b5"
        messages_html += f"""
        <div class="message">
            <div class="sender" style="font-weight: bold; color: {border_color};">{name}</div>
            <div class="message-content" style="border-left: 4px solid {border_color};">
                {_render_message_html(bubble.text or '')}
            </div>
        </div>
        """

    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>{title}</title>
    <style>
        body {{ max-width: 800px; margin: 40px auto; padding: 0 20px; font-family: -apple-system, BlinkMacSystemFont, "Segoe UI", Roboto, Arial, sans-serif; line-height: 1.6; color: #333; }}
        pre {{ background: #f5f5f5; padding: 1em; overflow-x: auto; border-radius: 4px; border: 1px solid #ddd; white-space: pre-wrap; }}
        .message {{ margin-bottom: 20px; }}
        .message-content {{ padding: 10px 15px; word-wrap: break-word; }}
    </style>
</head>
<body>
    <h1>{title}</h1>
    <p><em>Created: {_format_timestamp(tab.timestamp)}</em></p>
    <div class="messages">
{messages_html}
    </div>
</body>
</html>"""


def convert_chat_to_json(tab: ChatTab) -> str:
    return json.dumps(tab.to_dict(), ensure_ascii=False, indent=2)


def export_filename(tab: ChatTab, extension: str) -> str:
    base = tab.title or f"chat-{tab.id}"
    safe = re.sub(r'[\\/:*?"<>|\r\n]+', "_", base).strip() or f"chat-{tab.id}"
    return f"{safe}.{extension}"


EXPORTERS = {
    "markdown": (convert_chat_to_markdown, "md", "text/markdown"),
    "html": (convert_chat_to_html, "html", "text/html"),
    "json": (convert_chat_to_json, "json", "application/json"),
}
