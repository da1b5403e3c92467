"""Extraction of declared step outputs from agent responses.

Agents are asked (see rover.prompts) to answer with a JSON object for string
outputs and to create files for file outputs. They don't always comply, so
string outputs go through a chain of increasingly loose fallbacks. Values that
can't be recovered become sentinel strings instead of failing the step.
"""

import json
import logging
import re
import shutil
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import OutputParseError
from .workflow import WorkflowOutput, WorkflowStep

logger = logging.getLogger(__name__)

# Sentinel values stored when an output cannot be obtained
NOT_FOUND = "[Not found in response]"
FILE_NOT_CREATED = "[File not created]"
MISSING_FILENAME = "[Missing filename]"
UNREADABLE_FILE = "[Could not read file]"

# Keys holding the response text in each tool's JSON envelope, in precedence order
RESPONSE_CONTENT_KEYS: Dict[str, Tuple[str, ...]] = {
    "claude": ("result", "content", "message"),
    "gemini": ("response", "content", "text"),
}
DEFAULT_CONTENT_KEYS = ("result", "response", "content", "message", "text")

_JSON_BLOCK_PATTERN = re.compile(r'```json\s*([\s\S]*?)\s*```', re.IGNORECASE)

# A flat JSON object with at least one "key": "string" pair
_INLINE_JSON_PATTERN = re.compile(r'\{[^{}]*"[^"]+"\s*:\s*"[^"]*"[^{}]*\}')


def stringify(value: Any) -> str:
    """Render a JSON value as the string stored in an output map."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    if value is None:
        return "null"
    return str(value)


def parse_json_object(text: str) -> Optional[Dict[str, Any]]:
    """Parse text as a JSON object, returning None if it isn't one."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        return None
    return data if isinstance(data, dict) else None


def find_json_block(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first fenced ```json block holding a JSON object."""
    for match in _JSON_BLOCK_PATTERN.finditer(text):
        data = parse_json_object(match.group(1))
        if data is not None:
            return data
    return None


def find_inline_json(text: str) -> Optional[Dict[str, Any]]:
    """Parse the first flat inline JSON object with a string value."""
    for match in _INLINE_JSON_PATTERN.finditer(text):
        data = parse_json_object(match.group(0))
        if data is not None:
            return data
    return None


def extract_json_from_content(text: str) -> Optional[Dict[str, Any]]:
    """Find embedded JSON: a fenced block first, then an inline object."""
    return find_json_block(text) or find_inline_json(text)


def match_header_value(name: str, content: str) -> Optional[str]:
    """Find ``## <name>`` (optionally ``## Task <name>``) and return the next word, lowercased."""
    pattern = re.compile(
        rf'##\s*(?:Task\s+)?{re.escape(name)}[\s\S]*?\n+\s*(simple|complex|true|false|\w+)',
        re.IGNORECASE
    )
    match = pattern.search(content)
    return match.group(1).lower() if match else None


def match_key_value(name: str, content: str) -> Optional[str]:
    """Find ``name: value`` or ``name = value`` and return the value, lowercased."""
    pattern = re.compile(
        rf'["\']?{re.escape(name)}["\']?\s*[=:]\s*["\']?(\w+)["\']?',
        re.IGNORECASE
    )
    match = pattern.search(content)
    return match.group(1).lower() if match else None


def extract_response_content(
    raw_output: str, tool: Optional[str], uses_json_format: bool
) -> Tuple[str, Optional[Dict[str, Any]]]:
    """Unwrap the response text from a tool's output.

    Args:
        raw_output: Raw stdout of the agent
        tool: Agent tool name (selects the envelope keys)
        uses_json_format: Whether the tool was asked for a JSON envelope

    Returns:
        Tuple of (response text, parsed envelope or None). When the envelope
        can't be parsed the raw output is returned as the text.
    """
    if not uses_json_format:
        return raw_output, None

    envelope = parse_json_object(raw_output.strip())
    if envelope is None:
        return raw_output, None

    for key in RESPONSE_CONTENT_KEYS.get(tool or "", DEFAULT_CONTENT_KEYS):
        value = envelope.get(key)
        if isinstance(value, str):
            return value, envelope
    return raw_output, envelope


class ResponseParser:
    """Fills a step's output map from the agent's response and created files.

    Args:
        reporter: ConsoleReporter used to print warnings as they happen
        cwd: Directory the agent ran in; relative filenames are resolved here
    """

    def __init__(self, reporter=None, cwd: Optional[Path] = None):
        self.reporter = reporter
        self.cwd = Path(cwd) if cwd is not None else Path.cwd()

    def _warn(self, message: str) -> None:
        logger.warning(message)
        if self.reporter is not None:
            self.reporter.warning(message)

    def _found(self, name: str, value: str) -> None:
        if self.reporter is not None:
            self.reporter.debug(f"  Extracted {name}: {value}")

    def parse_subprocess_outputs(
        self,
        step: WorkflowStep,
        raw_output: str,
        outputs: Dict[str, str],
        tool: Optional[str],
        uses_json_format: bool,
        output_dir: Optional[Path] = None,
        usage_extractor: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> Any:
        """Parse the output of a one-shot agent invocation.

        String outputs are looked up in the response parsed as JSON, then in a
        fenced ```json block. File outputs are collected from disk.

        Args:
            step: The step that ran
            raw_output: Raw stdout of the agent
            outputs: Output map to fill (modified in place)
            tool: Agent tool name
            uses_json_format: Whether the tool emits a JSON envelope
            output_dir: Directory file outputs are moved into
            usage_extractor: Callback turning the parsed envelope into usage stats

        Returns:
            Whatever usage_extractor returned, or None

        Raises:
            OutputParseError: If the extraction machinery itself fails
        """
        try:
            content, envelope = extract_response_content(raw_output, tool, uses_json_format)
            if uses_json_format and envelope is None:
                self._warn(f"Response from {tool} is not valid JSON, using raw output")

            usage = None
            if envelope is not None and usage_extractor is not None:
                usage = usage_extractor(envelope)

            string_outputs = step.string_outputs()
            if string_outputs:
                data = parse_json_object(content.strip()) or find_json_block(content)
                if data is None:
                    self._warn("Could not find a JSON object in the agent response")
                for output in string_outputs:
                    if data is not None and output.name in data:
                        value = stringify(data[output.name])
                        outputs[output.name] = value
                        self._found(output.name, value)
                    else:
                        self._warn(f"Output '{output.name}' not found in response")
                        outputs[output.name] = NOT_FOUND

            file_outputs = step.file_outputs()
            if file_outputs:
                self.extract_file_outputs(file_outputs, outputs, output_dir)

            return usage
        except OutputParseError:
            raise
        except Exception as e:
            raise OutputParseError(f"Failed to parse outputs: {e}") from e

    def parse_session_outputs(
        self,
        step: WorkflowStep,
        response: str,
        outputs: Dict[str, str],
        output_dir: Optional[Path] = None,
    ) -> None:
        """Parse the outputs of a session step.

        File outputs are collected first so their content can feed the string
        output fallbacks: the ``_<step>_outputs.json`` file, JSON embedded in
        file contents, JSON embedded in the response, then header and
        key-value patterns in file contents.

        Raises:
            OutputParseError: If the extraction machinery itself fails
        """
        try:
            file_outputs = step.file_outputs()
            if file_outputs:
                self.extract_file_outputs(file_outputs, outputs, output_dir)

            string_outputs = step.string_outputs()
            if string_outputs:
                self._extract_session_strings(step.id, string_outputs, file_outputs, outputs, response)
        except OutputParseError:
            raise
        except Exception as e:
            raise OutputParseError(f"Failed to parse outputs: {e}") from e

    def _read_outputs_file(self, step_id: str) -> Optional[Dict[str, Any]]:
        path = self.cwd / f"_{step_id}_outputs.json"
        if not path.exists():
            return None
        try:
            data = parse_json_object(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError):
            data = None
        if data is None:
            self._warn(f"Found {path.name} but failed to parse it")
            return None
        try:
            path.unlink()
        except OSError as e:
            logger.debug(f"Could not remove {path}: {e}")
        return data

    def _extract_session_strings(
        self,
        step_id: str,
        string_outputs: List[WorkflowOutput],
        file_outputs: List[WorkflowOutput],
        outputs: Dict[str, str],
        response: str,
    ) -> None:
        data = self._read_outputs_file(step_id)

        if data is None:
            for output in file_outputs:
                content = outputs.get(f"{output.name}_content")
                if content:
                    data = extract_json_from_content(content)
                    if data is not None:
                        break

        if data is None and response:
            data = parse_json_object(response.strip()) or extract_json_from_content(response)

        file_contents = [
            value for key, value in outputs.items()
            if key.endswith("_content")
        ]

        for output in string_outputs:
            value = None
            if data is not None and output.name in data:
                value = stringify(data[output.name])
            if value is None:
                for content in file_contents:
                    value = match_header_value(output.name, content) or match_key_value(output.name, content)
                    if value is not None:
                        break
            if value is None:
                self._warn(f"Output '{output.name}' not found in response")
                value = NOT_FOUND
            else:
                self._found(output.name, value)
            outputs[output.name] = value

    def extract_file_outputs(
        self,
        file_outputs: List[WorkflowOutput],
        outputs: Dict[str, str],
        output_dir: Optional[Path] = None,
    ) -> None:
        """Collect files the agent was asked to create.

        Stores the file path under the output name and its text under
        ``<name>_content``. When output_dir is given the file is moved there
        by copy-then-delete, since it may live on a different mount.
        """
        for output in file_outputs:
            if not output.filename:
                self._warn(f"File output '{output.name}' missing filename")
                outputs[output.name] = MISSING_FILENAME
                continue

            source = Path(output.filename)
            if not source.is_absolute():
                source = self.cwd / source

            if not source.exists():
                self._warn(f"File '{output.filename}' was not created")
                outputs[output.name] = FILE_NOT_CREATED
                continue

            try:
                target = source
                if output_dir is not None:
                    target = Path(output_dir) / source.name
                    if target.resolve() != source.resolve():
                        shutil.copyfile(source, target)
                        source.unlink()
                content = target.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as e:
                self._warn(f"Could not read file '{output.filename}': {e}")
                outputs[output.name] = UNREADABLE_FILE
                continue

            outputs[output.name] = str(target)
            outputs[f"{output.name}_content"] = content
            self._found(output.name, str(target))
