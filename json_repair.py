import re
import json
import logging
from typing import Any, Dict, List, Optional

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DOCUMENT_START_PATTERN = re.compile(r'\{\s*"document_index"\s*:\s*\d+')
DOCUMENT_INDEX_PATTERN = re.compile(r'"document_index"\s*:\s*(\d+)')


def strip_code_fences(text: str) -> str:
    """Remove ```json / ``` markdown wrappers"""
    cleaned = (text or '').strip()

    if cleaned.startswith('```json'):
        cleaned = cleaned[7:]
    elif cleaned.startswith('```'):
        cleaned = cleaned[3:]

    if cleaned.endswith('```'):
        cleaned = cleaned[:-3]

    return cleaned.strip()


def balance_brackets(text: str) -> str:
    """
    Close any brackets left open by a truncated response.

    Walks the text outside of string literals, tracking the open bracket
    stack, then appends the matching closers in reverse order. An unterminated
    string is closed first.
    """
    stack = []
    in_string = False
    escaped = False

    for char in text:
        if in_string:
            if escaped:
                escaped = False
            elif char == '\\':
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in '{[':
            stack.append('}' if char == '{' else ']')
        elif char in '}]' and stack and stack[-1] == char:
            stack.pop()

    repaired = text
    if in_string:
        repaired += '"'

    # A dangling comma or colon before the closers would still be invalid
    repaired = re.sub(r'[,:]\s*$', '', repaired)

    return repaired + ''.join(reversed(stack))


def remove_trailing_commas(text: str) -> str:
    return re.sub(r',\s*([}\]])', r'\1', text)


def _slice_outer_object(text: str) -> str:
    start = text.find('{')
    if start == -1:
        return text
    end = text.rfind('}')
    if end > start:
        return text[start:end + 1]
    return text[start:]


def extract_json_object(text: str) -> Optional[Dict]:
    """
    Recover a JSON object from model output.

    Strategies, in order: fenced block, the whole text, the slice from the
    first '{' to the last '}', then the same slice with trailing commas
    removed and open brackets closed.
    """
    if not text:
        return None

    candidates = []

    fenced = re.search(r'```(?:json)?\s*(.*?)\s*```', text, re.DOTALL)
    if fenced:
        candidates.append(fenced.group(1))

    stripped = strip_code_fences(text)
    candidates.append(stripped)

    sliced = _slice_outer_object(stripped)
    candidates.append(sliced)
    candidates.append(balance_brackets(remove_trailing_commas(sliced)))

    # Balancing the raw tail handles output cut off mid-object
    if '{' in stripped:
        tail = stripped[stripped.find('{'):]
        candidates.append(remove_trailing_commas(balance_brackets(tail)))

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except (json.JSONDecodeError, TypeError):
            continue
        if isinstance(parsed, dict):
            return parsed

    return None


def parse_json_response(raw_response: str) -> Dict:
    """Parse model output into a dict, reporting where parsing failed"""
    try:
        cleaned = _slice_outer_object(strip_code_fences(raw_response))

        try:
            result = json.loads(cleaned)
            if not isinstance(result, dict):
                raise ValueError("Response is not a JSON object")
            return {"success": True, "result": result}

        except json.JSONDecodeError as e:
            repaired = extract_json_object(raw_response)
            if repaired is not None:
                logger.warning(f"Repaired malformed JSON response ({e.msg} at {e.pos})")
                return {"success": True, "result": repaired, "repaired": True}

            error_position = getattr(e, 'pos', 0)
            context_start = max(0, error_position - 50)
            context_end = min(len(cleaned), error_position + 50)

            return {
                "success": False,
                "error": f"Invalid JSON response at position {error_position}: {str(e)}",
                "context": cleaned[context_start:context_end],
                "raw_response": cleaned[:1000]
            }

    except Exception as e:
        return {
            "success": False,
            "error": f"Error parsing response: {str(e)}",
            "raw_response": raw_response[:500] if raw_response else "No response"
        }


def find_document_objects(text: str) -> List[Dict[str, Any]]:
    """
    Pull every `{"document_index": n, ...}` object out of a multi-document
    response. Objects that still fail to parse after brace balancing are
    reported with their recovered index.
    """
    found = []
    text = text or ''
    decoder = json.JSONDecoder()
    starts = [m.start() for m in DOCUMENT_START_PATTERN.finditer(text)]

    for i, start in enumerate(starts):
        end = starts[i + 1] if i + 1 < len(starts) else len(text)
        json_str = text[start:end].strip()

        try:
            try:
                parsed, _ = decoder.raw_decode(text, start)
            except json.JSONDecodeError:
                # Truncated or malformed: cut at the last brace and close what is open
                repaired = json_str[:json_str.rfind('}') + 1] or json_str
                parsed = json.loads(balance_brackets(remove_trailing_commas(repaired)))

            if not isinstance(parsed, dict) or 'document_index' not in parsed:
                continue
            found.append({"index": int(parsed['document_index']), "data": parsed})

        except (json.JSONDecodeError, ValueError, TypeError) as e:
            logger.error(f"Failed to parse document object: {e}")
            index_match = DOCUMENT_INDEX_PATTERN.search(json_str)
            if index_match:
                found.append({
                    "index": int(index_match.group(1)),
                    "error": "Failed to parse extraction results"
                })

    return found


def _coerce_scalar(value: str):
    if value == 'true':
        return True
    if value == 'false':
        return False
    if re.fullmatch(r'-?\d+', value):
        return int(value)
    if re.fullmatch(r'-?\d*\.\d+', value):
        return float(value)
    return value


def parse_key_value_lines(text: str) -> Dict[str, Any]:
    """Fallback for non-JSON output: one `key: value` pair per line"""
    parsed = {}

    for line in (text or '').split('\n'):
        key, sep, value = line.partition(':')
        key = key.strip()
        value = value.strip()
        if not sep or not key or not value:
            continue

        if (value.startswith('[') and value.endswith(']')) or \
                (value.startswith('{') and value.endswith('}')):
            try:
                parsed[key] = json.loads(value)
            except json.JSONDecodeError:
                parsed[key] = value
        else:
            parsed[key] = _coerce_scalar(value)

    return parsed
