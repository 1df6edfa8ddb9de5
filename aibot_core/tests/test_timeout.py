import asyncio

import pytest

from aibot_core.domain.exceptions import BusinessError, OperationTimeoutError
from aibot_core.infrastructure.timeout import with_timeout


@pytest.mark.asyncio
async def test_with_timeout_returns_result():
    async def op():
        return 42

    assert await with_timeout(op(), 1.0, label="quick") == 42


@pytest.mark.asyncio
async def test_with_timeout_raises_labelled_error():
    async def op():
        await asyncio.sleep(10)

    with pytest.raises(OperationTimeoutError) as exc_info:
        await with_timeout(op(), 0.01, label="slow fetch")

    err = exc_info.value
    assert err.label == "slow fetch"
    assert err.code == "TIMEOUT"
    assert err.elapsed >= 0.0
    assert "slow fetch timed out" in err.message
    assert isinstance(err, TimeoutError)


@pytest.mark.asyncio
async def test_with_timeout_propagates_operation_errors():
    async def op():
        raise BusinessError(code="BOOM", message="boom")

    with pytest.raises(BusinessError) as exc_info:
        await with_timeout(op(), 1.0)
    assert exc_info.value.code == "BOOM"
