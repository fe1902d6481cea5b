# treeworker

`treeworker` holds the building blocks of a coding-agent worker that serves
one conversation tree: the entry and message types of the tree, rebuilding
the message context a model sees, splitting `<think>` blocks out of streamed
text, collecting project instruction files, a client for model requests that
are proxied through a pipe, and a language-server client that reports
diagnostics for edited files.

It has no third-party dependencies.

## Installing

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Entries and messages

`treeworker.entries` defines the entries of a conversation tree
(`SessionStartEntry`, `SessionEndEntry`, `MessageEntry`, `GoalSetEntry`,
`ModelSetEntry`, `LabelEntry`, `BashExecEntry`), each with `id`, `parent_id`
and `timestamp`, plus `Message`, `ToolCall`, `TextBlock`, `ToolCallBlock`,
`MessageRole`, `SessionStatus` and `TreeMeta`.

```python
from treeworker.entries import (
    Message, MessageEntry, MessageRole, entry_from_dict, entry_to_dict, generate_entry_id,
)

entry = MessageEntry(
    id=generate_entry_id(),
    parent_id=None,
    timestamp="2026-01-01T00:00:00Z",
    message=Message(role=MessageRole.USER, content="hello"),
)
data = entry_to_dict(entry)          # {"type": "message", ...}
assert entry_from_dict(data) == entry
```

`entry_from_dict`, `Message.from_dict` and `TreeMeta.from_dict` raise
`ValueError` on malformed input. `generate_entry_id()` returns eight random
hex digits.

## Building a model context

```python
from treeworker.agent import build_context, estimate_context_tokens, estimate_tokens

messages = build_context(entries, leaf_id)
tokens = estimate_context_tokens(messages)
```

`build_context` walks up the parent chain from `leaf_id`. Messages are kept
in order from root to leaf; a session end stops the walk and, when it has a
non-blank continuation brief, adds it as a `## Previous Session Continuation`
system message; the goal of a goal entry on the path is put first as a
`## Current Goal` system message. Other entries are skipped.
`estimate_tokens` counts about 3.5 UTF-8 bytes per token.

## Thinking blocks

```python
from treeworker.thinking import SegmentKind, split_thinking_chunks

segments, in_thinking = split_thinking_chunks("<think>reason</think>answer", False)
# [ThinkingSegment(SegmentKind.THINKING, "reason"), ThinkingSegment(SegmentKind.TEXT, "answer")]
```

The state is passed in and returned so a stream can be split chunk by chunk.
An opening tag preceded by non-whitespace text is treated as literal text.

## Project instruction files

```python
from treeworker.context_files import format_context_section, load_context_files

files = load_context_files(cwd, agent_dir)
section = format_context_section(files)
```

`load_context_files` reads `AGENTS.md` and `skills/*/SKILL.md` in
`agent_dir`, then `AGENTS.md`, `CLAUDE.md` and `.agent/skills/*/SKILL.md` in
every directory from the filesystem root down to `cwd`. Blank files are
ignored. The result is ordered by depth, so files closer to `cwd` come later;
files from `agent_dir` come last. `format_context_section` renders them under
a `## Project Context` heading, or returns `""` when there are none.

## Model requests over a pipe

`treeworker.llm.WorkerLlmClient` hands each `LlmRequest` to a `send`
callable you provide and returns an `LlmStream`. Responses are fed back with
`route()` as `LlmChunk`, `LlmDone` or `LlmFailure`; responses for unknown ids
are dropped.

```python
from treeworker.llm import LlmChunk, LlmDone, WorkerLlmClient

client = WorkerLlmClient(send=outbox.append)
stream = client.request(messages, tools=[], routing="my-tree")

client.route(LlmChunk(stream.id, '{"delta_text": "Hi", "tool_call_delta": []}'))
client.route(LlmDone(stream.id))

async for text in stream:      # yields "Hi"
    ...
response = stream.finish()     # ChatResponse(text="Hi", tool_calls=None, finish_reason="stop", ...)
```

A failure raises `LlmApiError` (an `LlmError`) from the stream.
`await client.complete(messages, tools)` runs a request to the end and
returns the `ChatResponse`. `ResponseBuilder` assembles text, tool calls,
finish reason and usage from raw chunks.

## Language-server diagnostics

`treeworker.lsp_client` starts a language server as a subprocess, speaks
`Content-Length` framed JSON-RPC with it, and tracks published diagnostics.

```python
from treeworker.lsp_client import (
    LspClient, default_server, detect_language, format_diagnostics,
)

lang = detect_language("src/main.rs")          # "rust"
cfg = default_server(lang)                     # rust-analyzer
with LspClient.spawn(lang, cfg.command, cfg.args, root_uri, cfg.timeout_ms) as lsp:
    lsp.notify_saved("src/main.rs")
    lsp.read_available()
    print(format_diagnostics(lsp.all_diagnostics()))
    new = lsp.take_new_for_display(["/abs/path/src/main.rs"])
```

`take_new_for_display` reports, for each dirty file, the diagnostics that
were not there before the last save plus counts of errors and warnings that
were. `binary_exists`, `parse_frame`, `convert_diagnostics` and
`diag_is_seen` are available on their own. Start-up failures raise
`LspError`.

## What this package does not do

- It does not store trees on disk: there is no reader or writer for the
  tree's entry file or metadata file, only the types and their dict forms.
- It has no command to run and no worker process: nothing reads commands
  from standard input, writes events to standard output, runs the
  model-and-tool loop of a turn, enforces context caps or generates titles.
- It runs no tools; it only carries the tool calls a model asks for.