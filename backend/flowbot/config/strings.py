# /flowbot/config/strings.py

# User-facing copy sent by the flow engine. Kept in one place so wording can be
# changed or localized without touching execution logic.

GENERIC_FAILURE = "Something went wrong. Please try again later."

DEFAULT_MESSAGE = "Default message"
DEFAULT_BUTTONS_PROMPT = "Choose an option:"
DEFAULT_QUESTION_PROMPT = "Please enter your answer:"

INVALID_BUTTON_RETRY = "Invalid response. Please choose one of the buttons. ({attempts}/{max_attempts} attempts used)"
INVALID_BUTTON_TERMINATED = (
    "You've entered too many invalid responses ({max_attempts}/{max_attempts}).\n"
    "Ending this session. Please try again later if needed."
)

QUESTION_RETRY = "That doesn't look like a valid {validation}. Please try again. ({attempts}/{max_attempts} attempts used)\n{question}"
QUESTION_TERMINATED = (
    "Too many invalid answers ({max_attempts}/{max_attempts}).\n"
    "Ending this session. Please start again whenever you're ready."
)

API_FALLBACK = "Sorry, we couldn't fetch that information right now. Please try again later."
ACTION_FALLBACK = "Sorry, we couldn't complete that request right now. Please try again later."
