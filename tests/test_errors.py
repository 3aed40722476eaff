"""测试错误与退出码。"""

import pytest

from kubeboot.utils import errors


class TestExitCodes:
    """测试退出码映射。"""

    def test_plain_error(self):
        assert errors.exit_code_for(RuntimeError("boom")) == errors.DEFAULT_ERROR_EXIT_CODE

    def test_preflight_error(self):
        assert errors.exit_code_for(errors.PreflightError("x")) == errors.PREFLIGHT_EXIT_CODE

    def test_validation_error(self):
        assert errors.exit_code_for(errors.ValidationError("x")) == errors.VALIDATION_EXIT_CODE

    def test_wrapped_error(self):
        try:
            try:
                raise errors.ValidationError("inner")
            except errors.ValidationError as e:
                raise RuntimeError("outer") from e
        except RuntimeError as outer:
            assert errors.exit_code_for(outer) == errors.VALIDATION_EXIT_CODE


class TestFormatError:
    """测试错误格式化。"""

    def test_adds_prefix_and_hint(self):
        message = errors.format_error(RuntimeError("something failed"))

        assert message.startswith("error: something failed\n")
        assert "--v=5" in message

    def test_keeps_existing_prefix(self):
        assert errors.format_error(RuntimeError("error execution phase x")).startswith("error execution phase x\n")

    def test_preflight_message_unchanged(self):
        assert errors.format_error(errors.PreflightError("[preflight] bad")) == "[preflight] bad"

    def test_traceback_at_high_verbosity(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError as e:
            message = errors.format_error(e, verbosity=errors.TRACEBACK_VERBOSITY)

        assert message.startswith("Traceback")
        assert message.endswith("RuntimeError: boom")


class TestCheckErr:
    """测试 check_err。"""

    def test_none_is_noop(self):
        errors.check_err(None)

    def test_exits_with_code(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            errors.check_err(errors.PreflightError("[preflight] bad"))

        assert exc_info.value.code == errors.PREFLIGHT_EXIT_CODE
        assert "[preflight] bad" in capsys.readouterr().err
