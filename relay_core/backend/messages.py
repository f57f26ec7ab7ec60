"""后端流式协议的消息构造与解析。

后端通过一条全双工 WebSocket 交换 JSON 消息：

- 出站 init{sessionId}：连接建立后立即发送。
- 入站 ready：触发出站 message{content}（每次交换最多发送一次）。
- 入站 stream_chunk{data: {type, data}}：type == "content" 且 data 非空时为文本增量。
- 入站 stream_end：成功结束。
- 入站 error{error}：失败结束。

其他类型的入站消息一律忽略。
"""

import json
from typing import Any, Dict, Optional

from relay_core.domain.exceptions import MalformedBackendMessage


READY = "ready"
STREAM_CHUNK = "stream_chunk"
STREAM_END = "stream_end"
ERROR = "error"


def init_message(session_id: str) -> str:
    return json.dumps({"type": "init", "sessionId": session_id}, ensure_ascii=False)


def prompt_message(prompt: str) -> str:
    return json.dumps({"type": "message", "content": prompt}, ensure_ascii=False)


def parse_message(raw: Any) -> Dict[str, Any]:
    """解析一条入站消息。

    非 JSON、非对象或缺少字符串 type 字段的消息抛出 MalformedBackendMessage，
    由调用方丢弃。
    """

    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedBackendMessage(message=f"undecodable frame: {e}")
    try:
        data = json.loads(raw)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedBackendMessage(message=f"invalid JSON: {e}")
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise MalformedBackendMessage(message="message is not an object with a type field")
    return data


def content_text(message: Dict[str, Any]) -> Optional[str]:
    """从 stream_chunk 中取出文本增量；不是 content 类型时返回 None。"""

    data = message.get("data")
    if not isinstance(data, dict) or data.get("type") != "content":
        return None
    text = data.get("data")
    if not isinstance(text, str):
        return None
    return text


def error_text(message: Dict[str, Any]) -> str:
    err = message.get("error")
    if isinstance(err, dict):
        # 部分后端把错误包成 {"message": ...}
        err = err.get("message") or json.dumps(err, ensure_ascii=False)
    return str(err) if err else "Unknown backend error"
