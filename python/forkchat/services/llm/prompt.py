"""Provider-agnostic prompt rendering for LLM requests.

prompt.py produces Turn lists; each adapter converts them to its own format.

Prompt structure:
- System turn always first
- History turns (user/assistant only, older system turns dropped)
- Oldest history dropped first when the rough token estimate exceeds the
  model's input budget; the latest user turn is always kept
"""

from forkchat.services.llm.types import Turn

DEFAULT_SYSTEM_PROMPT = """You are an AI assistant called ForkChat.
You are a helpful assistant that can help with a wide range of tasks.
Be very friendly and engaging.
Be humorous and fun.
You are able to understand the user's intent and provide a helpful response.
If you are not sure about the user's intent, you can ask for more information.
Don't ever reply with an empty message."""

TITLE_SYSTEM_PROMPT = """You are an AI assistant that generates concise and engaging titles for chat conversations. Your goal is to analyze the first user message and the AI's response to create a relevant, clear, and compelling title that summarizes the core topic of the conversation.

Guidelines for Title Generation:
- Keep it short and clear (2-5 words).
- Capture the essence of the discussion (e.g., "How to Build a React App" or "Tips for Learning German").
- Avoid generic titles like "Chat Started" or "AI Conversation."
- Make it engaging but informative, ensuring it reflects the topic accurately.
- If uncertain, prioritize the user's intent based on their first message.

Examples:
1. User: "How can I improve my resume?"
Title: "Resume Improvement Tips"
2. User: "Explain quantum computing in simple terms."
Title: "Beginner's Guide to Quantum Computing"
3. User: "Tell me a joke."
Title: "A Fun AI Joke"
4. User: "What's the best way to cook pasta?"
Title: "Perfect Pasta Cooking Tips"

Output Format:
Provide only the generated title, without extra explanations or adding quotes to the title."""  # noqa: E501

MAX_TITLE_CHARS = 80


def build_system_prompt(
    reasoning_effort: str | None = None,
    include_search: bool = False,
    base: str = DEFAULT_SYSTEM_PROMPT,
) -> str:
    """System prompt with per-message generation hints appended."""
    lines = [base]
    if reasoning_effort:
        lines.append(f"Use {reasoning_effort} reasoning effort in your responses.")
    if include_search:
        lines.append("Include relevant search context when appropriate.")
    return "\n".join(lines)


def estimate_token_count(text: str) -> int:
    """Rough estimate of token count (~4 chars per token).

    Only used to keep history inside the model's input limit; real counts
    come from provider responses.
    """
    return len(text) // 4 + 1


def render_prompt(
    history: list[Turn],
    system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    max_input_tokens: int | None = None,
) -> list[Turn]:
    """Build the turn list for a generation request.

    Args:
        history: Thread turns in order, ending with the latest user turn.
        system_prompt: System instructions.
        max_input_tokens: Model input limit; None disables trimming.
    """
    turns = [t for t in history if t.role in ("user", "assistant") and t.content]

    if max_input_tokens is not None:
        budget = max_input_tokens - estimate_token_count(system_prompt)
        total = sum(estimate_token_count(t.content) for t in turns)
        while len(turns) > 1 and total > budget:
            total -= estimate_token_count(turns.pop(0).content)

    return [Turn(role="system", content=system_prompt), *turns]


def render_title_prompt(user_message: str, assistant_message: str) -> list[Turn]:
    return [
        Turn(role="system", content=TITLE_SYSTEM_PROMPT),
        Turn(role="user", content=f"User: {user_message}\nAssistant: {assistant_message}"),
    ]


def clean_title(raw: str) -> str:
    """Normalize model output into a single-line title."""
    line = next((ln.strip() for ln in raw.splitlines() if ln.strip()), "")
    if line.lower().startswith("title:"):
        line = line[6:].strip()
    line = line.strip("\"'` ")
    return line[:MAX_TITLE_CHARS]


SUMMARY_SYSTEM_PROMPT = """You are an AI assistant that creates comprehensive and insightful summaries of chat conversations.

Your task is to analyze the entire conversation and provide a well-structured summary that captures:

1. **Main Topics**: The primary subjects discussed throughout the conversation
2. **Key Points**: Important information, decisions, or insights shared
3. **User Intent**: What the user was trying to accomplish or learn
4. **Outcomes**: Any solutions provided, questions answered, or tasks completed
5. **Context**: Any relevant background information that shaped the conversation

Guidelines for your summary:
- Be concise but comprehensive
- Use clear, organized formatting with headers and bullet points
- Highlight the most important information
- Maintain the chronological flow of topics if relevant
- Include any actionable items or next steps mentioned
- Keep the tone professional but accessible

Format your response as a structured summary with clear sections. Make it useful for someone who wants to quickly understand what was discussed without reading the entire conversation."""  # noqa: E501


def render_summary_prompt(transcript: list[tuple[str, str, str]]) -> list[Turn]:
    """Build the summary request from (timestamp, role, text) entries, oldest first."""
    speaker = {"user": "User", "assistant": "Assistant"}
    conversation = "\n\n".join(
        f"[{stamp}] {speaker.get(role, role)}: {text}" for stamp, role, text in transcript
    )
    return [
        Turn(role="system", content=SUMMARY_SYSTEM_PROMPT),
        Turn(
            role="user",
            content=f"Please summarize the following conversation:\n\n{conversation}",
        ),
    ]
