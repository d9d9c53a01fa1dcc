from enum import Enum


class UpstreamEventType(str, Enum):
    """Closed set of upstream stream event tags the decoder understands"""

    # lifecycle
    RESPONSE_CREATED = "response.created"
    RESPONSE_QUEUED = "response.queued"
    RESPONSE_IN_PROGRESS = "response.in_progress"
    RESPONSE_COMPLETED = "response.completed"
    RESPONSE_INCOMPLETE = "response.incomplete"
    RESPONSE_FAILED = "response.failed"
    ERROR = "error"

    # text
    OUTPUT_TEXT_DELTA = "response.output_text.delta"
    OUTPUT_TEXT_DONE = "response.output_text.done"
    OUTPUT_TEXT_ANNOTATION_ADDED = "response.output_text.annotation.added"

    # items
    OUTPUT_ITEM_ADDED = "response.output_item.added"
    OUTPUT_ITEM_DONE = "response.output_item.done"

    # function calls
    FUNCTION_CALL_ARGUMENTS_DELTA = "response.function_call_arguments.delta"
    FUNCTION_CALL_ARGUMENTS_DONE = "response.function_call_arguments.done"

    # reasoning
    REASONING_SUMMARY_TEXT_DELTA = "response.reasoning_summary_text.delta"
    REASONING_SUMMARY_TEXT_DONE = "response.reasoning_summary_text.done"

    # hosted tools
    IMAGE_GENERATION_IN_PROGRESS = "response.image_generation_call.in_progress"
    IMAGE_GENERATION_GENERATING = "response.image_generation_call.generating"
    IMAGE_GENERATION_PARTIAL_IMAGE = "response.image_generation_call.partial_image"
    IMAGE_GENERATION_COMPLETED = "response.image_generation_call.completed"
    WEB_SEARCH_IN_PROGRESS = "response.web_search_call.in_progress"
    WEB_SEARCH_SEARCHING = "response.web_search_call.searching"
    WEB_SEARCH_COMPLETED = "response.web_search_call.completed"
    CODE_INTERPRETER_IN_PROGRESS = "response.code_interpreter_call.in_progress"
    CODE_INTERPRETER_INTERPRETING = "response.code_interpreter_call.interpreting"
    CODE_INTERPRETER_COMPLETED = "response.code_interpreter_call.completed"
    CODE_INTERPRETER_CODE_DELTA = "response.code_interpreter_call_code.delta"
    CODE_INTERPRETER_CODE_DONE = "response.code_interpreter_call_code.done"

    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, tag: str) -> "UpstreamEventType":
        try:
            return cls(tag)
        except ValueError:
            return cls.UNKNOWN


class OutputItemType(str, Enum):
    """Item kinds carried by output_item.added / output_item.done"""
    FUNCTION_CALL = "function_call"
    IMAGE_GENERATION_CALL = "image_generation_call"
    WEB_SEARCH_CALL = "web_search_call"
    CODE_INTERPRETER_CALL = "code_interpreter_call"
    MESSAGE = "message"
    REASONING = "reasoning"


class TurnOutcome(str, Enum):
    """How one decoded upstream stream ended"""
    COMPLETED = "completed"
    CONTINUE = "continue"
    ABORTED = "aborted"
    FAILED = "failed"
    STALE_RESOURCE = "stale_resource"

    @property
    def is_terminal(self) -> bool:
        return self in (TurnOutcome.COMPLETED, TurnOutcome.ABORTED, TurnOutcome.FAILED)
