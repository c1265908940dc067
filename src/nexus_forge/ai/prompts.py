from nexus_forge.ai.types import OperationKind, Request

_INSTRUCTIONS: dict[OperationKind, str] = {
    OperationKind.GENERATE: "Write {language} code for the request. Reply with the code only.",
    OperationKind.CHAT: "You are a concise senior software engineer helping in a terminal session.",
    OperationKind.ASK: "Answer the question about the codebase using the provided excerpts.",
    OperationKind.EXPLAIN: "Explain what the given {language} code does, at the requested depth.",
    OperationKind.REVIEW: "Review the code for bugs, risks and style problems; list concrete findings.",
    OperationKind.FIX: "Fix the bugs in the given {language} code. Reply with the corrected code only.",
    OperationKind.TEST: "Write unit tests for the given {language} code. Reply with the test code only.",
    OperationKind.COMMIT: "Write a conventional commit message for the diff: a summary line, a blank line, a body.",
    OperationKind.DOC: "Add documentation comments to the given {language} code. Reply with the full code.",
    OperationKind.REFACTOR: "Refactor the given {language} code for clarity without changing behaviour.",
    OperationKind.DIFF: "Summarise the changes in the diff and point out anything risky.",
    OperationKind.CONVERT: "Convert the given code to {language}. Reply with the converted code only.",
    OperationKind.OPTIMIZE: "Optimise the given {language} code for the requested focus. Reply with the code.",
}


def instruction_for(request: Request) -> str:
    return _INSTRUCTIONS[request.operation].format(language=request.language or "the same language")


def render_user_message(request: Request) -> str:
    """Flatten prompt and optional code context into one user turn."""
    if not request.context:
        return request.prompt
    return f"{request.prompt}\n\n<context>\n{request.context}\n</context>"
