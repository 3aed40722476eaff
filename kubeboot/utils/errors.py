"""错误与退出码模块。

定义预检和配置校验错误，并将异常映射为进程退出码。
"""

import sys
import traceback

import click
import pydantic

DEFAULT_ERROR_EXIT_CODE = 1
PREFLIGHT_EXIT_CODE = 2
VALIDATION_EXIT_CODE = 3
INTERRUPTED_EXIT_CODE = 130

# 达到该日志级别时输出完整的异常栈
TRACEBACK_VERBOSITY = 5


class PreflightError(Exception):
    """预检出现不可忽略的错误。"""


class ValidationError(Exception):
    """配置或命令行参数校验失败。"""


def _causes(err: BaseException):
    seen: set[int] = set()
    current: BaseException | None = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def exit_code_for(err: BaseException) -> int:
    """根据异常（及其 __cause__ 链）确定退出码。

    Args:
        err: 异常

    Returns:
        退出码
    """
    for cause in _causes(err):
        if isinstance(cause, PreflightError):
            return PREFLIGHT_EXIT_CODE
        if isinstance(cause, (ValidationError, pydantic.ValidationError)):
            return VALIDATION_EXIT_CODE
    return DEFAULT_ERROR_EXIT_CODE


def format_error(err: BaseException, verbosity: int = 0) -> str:
    """格式化错误信息。

    预检错误本身已包含完整说明，不再添加前缀。
    """
    if verbosity >= TRACEBACK_VERBOSITY:
        return "".join(traceback.format_exception(type(err), err, err.__traceback__)).rstrip()

    message = str(err)
    if exit_code_for(err) == PREFLIGHT_EXIT_CODE:
        return message
    if not message.startswith("error"):
        message = f"error: {message}"
    return f"{message}\nTo see the stack trace of this error execute with --v={TRACEBACK_VERBOSITY} or higher"


def check_err(err: BaseException | None, verbosity: int = 0) -> None:
    """若存在错误，打印到 stderr 并以对应退出码退出。

    Args:
        err: 异常，None 时直接返回
        verbosity: 日志级别
    """
    if err is None:
        return
    click.echo(format_error(err, verbosity), err=True)
    sys.exit(exit_code_for(err))
