"""Unit tests for Rust-style error formatting and phase-gated error collection."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from io import StringIO
from unittest import mock

import pytest

from agentflow.core.errors import (
    AgentflowError,
    ConfigurationError,
    ErrorCode,
    MultipleValidationErrors,
    NotFoundError,
    StateTransitionError,
    ValidationReport,
    WorkflowValidationError,
    _agentflow_excepthook,
    _should_use_colors,
    illegal_transition,
    install_error_handler,
    not_found,
    raise_collected,
    uninstall_error_handler,
)

pytestmark = pytest.mark.unit


@pytest.fixture
def restore_excepthook() -> Iterator[None]:
    original = sys.excepthook
    yield
    sys.excepthook = original


class TestAgentflowError:
    def test_is_exception_with_message_args(self) -> None:
        error = AgentflowError(message='boom')
        assert isinstance(error, Exception)
        assert error.args == ('boom',)

    def test_fluent_api(self) -> None:
        error = AgentflowError(message='boom').with_note('first').with_help('do this')
        assert error.notes == ['first']
        assert error.help_text == 'do this'

    def test_notes_are_not_shared(self) -> None:
        AgentflowError(message='a').with_note('only here')
        assert AgentflowError(message='b').notes == []

    def test_format_with_code_notes_and_help(self) -> None:
        error = WorkflowValidationError(
            message='cycle detected in workflow graph',
            code=ErrorCode.WORKFLOW_CYCLE_DETECTED,
            notes=["nodes involved in cycle: ['B', 'C']"],
            help_text='remove the connection\nthat closes the loop',
        )
        formatted = error.format_rust_style(use_colors=False)
        assert 'error[E007]: cycle detected in workflow graph' in formatted
        assert "= note: nodes involved in cycle: ['B', 'C']" in formatted
        assert '= help:' in formatted
        assert '        that closes the loop' in formatted

    def test_multiline_note_is_indented(self) -> None:
        error = AgentflowError(message='boom', notes=['line one\nline two'])
        lines = error.format_rust_style(use_colors=False).splitlines()
        assert lines[-1] == '          line two'

    def test_colors(self) -> None:
        formatted = AgentflowError(message='boom').format_rust_style(use_colors=True)
        assert '\033[' in formatted

    def test_str_is_plain(self) -> None:
        error = AgentflowError(message='boom', code=ErrorCode.NOT_FOUND)
        assert '\033[' not in str(error)
        assert 'error[E403]: boom' in str(error)


class TestColorDetection:
    def test_force_color(self) -> None:
        with mock.patch.dict('os.environ', {'AGENTFLOW_FORCE_COLOR': '1'}):
            assert _should_use_colors() is True

    def test_no_color(self) -> None:
        with mock.patch.dict('os.environ', {'NO_COLOR': ''}, clear=True):
            assert _should_use_colors() is False


class TestHelpers:
    def test_not_found(self) -> None:
        error = not_found('task run', 'abc')
        assert isinstance(error, NotFoundError)
        assert error.code == ErrorCode.NOT_FOUND
        assert error.message == "task run 'abc' not found"

    def test_illegal_transition(self) -> None:
        error = illegal_transition('task run', 'abc', 'Completed', 'resume')
        assert isinstance(error, StateTransitionError)
        assert error.code == ErrorCode.ILLEGAL_TRANSITION
        assert error.message == "cannot resume task run 'abc' in status Completed"


class TestRaiseCollected:
    def test_no_errors_is_noop(self) -> None:
        raise_collected(ValidationReport('config'))

    def test_single_error_is_raised_as_itself(self) -> None:
        report = ValidationReport('config')
        original = ConfigurationError(message='bad queue', code=ErrorCode.CONFIG_INVALID_QUEUES)
        report.add(original)
        with pytest.raises(ConfigurationError) as exc_info:
            raise_collected(report)
        assert exc_info.value is original

    def test_many_errors_are_wrapped(self) -> None:
        report = ValidationReport('config')
        report.add(ConfigurationError(message='first'))
        report.add(ConfigurationError(message='second'))
        with pytest.raises(MultipleValidationErrors) as exc_info:
            raise_collected(report)

        error = exc_info.value
        assert isinstance(error, AgentflowError)
        assert error.report is report
        assert error.message == 'aborting due to 2 previous errors'
        text = str(error)
        assert 'first' in text and 'second' in text
        assert 'aborting config due to 2 previous errors' in text


class TestExceptHook:
    def test_install_and_uninstall(self, restore_excepthook: None) -> None:
        install_error_handler()
        assert sys.excepthook is _agentflow_excepthook
        uninstall_error_handler()
        assert sys.excepthook is not _agentflow_excepthook

    def test_agentflow_errors_are_printed_rust_style(self) -> None:
        error = AgentflowError(message='boom', code=ErrorCode.NOT_FOUND)
        stderr = StringIO()
        with mock.patch.dict('os.environ', {}, clear=True), mock.patch('sys.stderr', stderr):
            _agentflow_excepthook(AgentflowError, error, None)
        assert 'error[E403]: boom' in stderr.getvalue()

    def test_other_errors_use_original_hook(self) -> None:
        error = ValueError('plain')
        with mock.patch('agentflow.core.errors._original_excepthook') as original:
            _agentflow_excepthook(ValueError, error, None)
        original.assert_called_once_with(ValueError, error, None)
