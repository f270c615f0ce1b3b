from turnrelay.services.result import Result, TurnErrorCode


class TestResultSuccess:
    def test_success_creates_ok_result(self):
        result = Result.success("We open at 9.")
        assert result.ok is True
        assert result.value == "We open at 9."
        assert result.error is None
        assert result.error_code is None


class TestResultFailure:
    def test_failure_with_turn_error_code(self):
        result = Result.failure("run ended with status failed", TurnErrorCode.RUN_FAILED)
        assert result.ok is False
        assert result.error == "run ended with status failed"
        assert result.error_code == "run_failed"
        assert result.value is None

    def test_failure_with_plain_code(self):
        result = Result.failure("boom", "unexpected")
        assert result.error_code == "unexpected"

    def test_failure_default_code(self):
        result = Result.failure("Error message")
        assert result.error_code == "unknown"


class TestResultUnwrapOr:
    def test_unwrap_or_returns_value_on_success(self):
        assert Result.success("reply").unwrap_or("") == "reply"

    def test_unwrap_or_returns_default_on_failure(self):
        assert Result.failure("Error", TurnErrorCode.GATEWAY_ERROR).unwrap_or("") == ""
