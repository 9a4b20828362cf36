from cortex_pathways.utils.errors import (
    BackendError,
    ConfigurationError,
    MalformedStreamLineError,
    PathwayError,
    ProblemDetail,
    RequestCanceledError,
    RequestNotFoundError,
)


def test_problem_detail_drops_empty_fields():
    problem = ProblemDetail(title="Bad", status=400)
    assert problem.model_dump() == {"title": "Bad", "status": 400, "type": "about:blank"}


def test_configuration_error_carries_extra():
    error = ConfigurationError("Prompt too long", extra={"prompt_tokens": 12})
    assert isinstance(error, PathwayError)
    payload = error.problem.model_dump()
    assert payload["status"] == 500
    assert payload["extra"] == {"prompt_tokens": 12}


def test_request_errors_reference_request_id():
    canceled = RequestCanceledError("req-1")
    missing = RequestNotFoundError("req-2")
    assert canceled.problem.status == 409
    assert canceled.problem.instance == "req-1"
    assert missing.problem.status == 404
    assert str(missing) == "Request req-2 not found"


def test_backend_error_keeps_payload():
    error = BackendError("boom", model="gpt", payload={"error": "boom"})
    assert error.model == "gpt"
    assert error.payload == {"error": "boom"}
    assert error.problem.model_dump()["extra"] == {"model": "gpt"}


def test_malformed_stream_line_error():
    error = MalformedStreamLineError("data: {", reason="Expecting value")
    assert error.line == "data: {"
    assert error.problem.detail == "Expecting value"
    assert error.problem.status == 422
