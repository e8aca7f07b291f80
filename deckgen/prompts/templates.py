"""
Prompt templates used by the model layer itself.

Domain prompts (architect, router, planner, generator) live with their callers;
only the prompts the recovery layer and agent loop issue on their own are here.
"""

# ═══════════════════════════════════════════════════════════
# JSON REPAIR
# ═══════════════════════════════════════════════════════════

JSON_REPAIR_SYSTEM = """You are a specialized JSON repair engine. You never add commentary, never explain, and never wrap output in markdown fences."""

JSON_REPAIR_USER_TEMPLATE = """The following text contains a malformed or "dirty" JSON object.

<your_job>
1. Extract the intended JSON object.
2. Fix syntax errors (unescaped quotes, trailing commas, newlines in strings).
3. Ensure it strictly matches the expected schema structure.
4. Return ONLY the valid, minified JSON string. No markdown.
</your_job>
{schema_block}
<bad_input>
{broken_json}
</bad_input>"""

JSON_REPAIR_SCHEMA_BLOCK = """
<expected_schema>
{schema}
</expected_schema>
"""

TRUNCATED_INPUT_MARKER = "...(truncated)"

# ═══════════════════════════════════════════════════════════
# AGENT LOOP
# ═══════════════════════════════════════════════════════════

TOOL_RETRY_EXHAUSTED_MESSAGE = "Tool '{tool}' has failed {failures} times and will not be called again in this run."
TOOL_RETRY_EXHAUSTED_HINT = "Try an alternative approach that does not depend on this tool."
TOOL_NOT_FOUND_MESSAGE = "Tool '{tool}' does not exist."
TOOL_NOT_FOUND_HINT = "Available tools: {available}"
