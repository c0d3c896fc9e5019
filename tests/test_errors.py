from src.scaffolder.errors import (
    ModelFailureError,
    NotFoundError,
    ScaffolderError,
    ValidationError,
    wrap_error,
)


def test_not_found_payload():
    err = NotFoundError("Conversation", "conv-1")
    payload = err.to_dict()
    assert payload["error"] == "NOT_FOUND"
    assert payload["message"] == "Conversation not found"
    assert payload["suggestion"]
    assert "technicalDetails" not in payload
    assert err.to_dict(include_details=True)["technicalDetails"] == 'Conversation with ID "conv-1" does not exist'


def test_validation_error_lists_all_issues():
    err = ValidationError(["Name is required", "Add at least one field"], warnings=["No views"], phase="design")
    payload = err.to_dict()
    assert err.status_code == 400
    assert payload["message"] == "2 validation issues found"
    assert payload["errors"] == ["Name is required", "Add at least one field"]
    assert payload["warnings"] == ["No views"]
    assert payload["phase"] == "design"
    assert ValidationError(["Name is required"]).message == "Name is required"


def test_wrap_error_classifies_by_message():
    assert wrap_error(ValueError("bad JSON in reply")).message == "Could not understand AI response"
    assert isinstance(wrap_error(TimeoutError("connection timeout")), ModelFailureError)
    assert isinstance(wrap_error(KeyError("record not found")), NotFoundError)
    existing = NotFoundError("App", "a1")
    assert wrap_error(existing) is existing


def test_wrap_error_defaults_to_generic():
    err = wrap_error(RuntimeError(), phase="build")
    assert type(err) is ScaffolderError
    assert err.technical_details == "RuntimeError"
    assert err.to_dict()["phase"] == "build"
