import pytest

from masix.providers.base import ChatResponse, PermanentProviderError, TransientProviderError
from masix.providers.router import AllProvidersFailed, RetryPolicy
from masix.services.profile_resolver import BotProfileResolver


@pytest.fixture()
def profile(runtime_config):
    return BotProfileResolver(runtime_config).resolve("123")


def test_retry_policy_delay_grows_and_is_capped():
    policy = RetryPolicy(window_secs=600, initial_delay_secs=2, backoff_factor=2, max_delay_secs=30)
    assert [policy.delay_for(n) for n in range(6)] == [2, 4, 8, 16, 30, 30]


def test_chain_for_moves_preferred_provider_first(router, profile):
    assert router.chain_for(profile) == ["primary", "secondary", "tertiary"]
    assert router.chain_for(profile, "tertiary") == ["tertiary", "primary", "secondary"]
    assert router.chain_for(profile, "unknown") == ["primary", "secondary", "tertiary"]


@pytest.mark.asyncio
async def test_primary_answer_is_used_without_fallback(router, profile, fake_providers):
    fake_providers["primary"].script = ["hello"]

    reply = await router.invoke(profile, [{"role": "user", "content": "hi"}])

    assert reply.provider == "primary"
    assert reply.response.content == "hello"
    assert reply.failures == []
    assert fake_providers["secondary"].calls == []


@pytest.mark.asyncio
async def test_transient_error_is_retried_on_the_same_provider(router, profile, fake_providers, sleeps):
    fake_providers["primary"].script = [TransientProviderError("503", status_code=503), "recovered"]

    reply = await router.invoke(profile, [{"role": "user", "content": "hi"}])

    assert reply.provider == "primary"
    assert reply.attempts == 2
    assert sleeps.delays == [1.0]
    assert fake_providers["secondary"].calls == []


@pytest.mark.asyncio
async def test_permanent_error_moves_to_the_next_provider_immediately(router, profile, fake_providers, sleeps):
    fake_providers["primary"].script = [PermanentProviderError("401 invalid api key", status_code=401)]
    fake_providers["secondary"].script = ["from secondary"]

    reply = await router.invoke(profile, [{"role": "user", "content": "hi"}])

    assert reply.provider == "secondary"
    assert len(fake_providers["primary"].calls) == 1
    assert sleeps.delays == []
    assert [f.provider for f in reply.failures] == ["primary"]
    assert reply.failures[0].transient is False


@pytest.mark.asyncio
async def test_third_provider_answers_after_two_fail(router, profile, fake_providers):
    fake_providers["primary"].script = [TransientProviderError("500", status_code=500)]
    fake_providers["secondary"].script = [PermanentProviderError("400 bad request", status_code=400)]
    fake_providers["tertiary"].script = [ChatResponse(content="third time lucky")]

    reply = await router.invoke(profile, [{"role": "user", "content": "hi"}])

    assert reply.provider == "tertiary"
    assert reply.response.content == "third time lucky"
    assert [f.provider for f in reply.failures] == ["primary", "secondary"]


@pytest.mark.asyncio
async def test_all_providers_failing_reports_every_failure(router, profile, fake_providers):
    for provider in fake_providers.values():
        provider.script = [TransientProviderError("500 upstream", status_code=500)]

    with pytest.raises(AllProvidersFailed) as exc_info:
        await router.invoke(profile, [{"role": "user", "content": "hi"}])

    failures = exc_info.value.failures
    assert [f.provider for f in failures] == ["primary", "secondary", "tertiary"]
    assert all(f.transient for f in failures)
    # the retry window bounds the attempts on every provider
    assert all(len(p.calls) >= 2 for p in fake_providers.values())
    assert all(len(p.calls) < 10 for p in fake_providers.values())


@pytest.mark.asyncio
async def test_unconfigured_provider_in_chain_is_a_permanent_failure(router, fake_providers):
    fake_providers["secondary"].script = ["ok"]

    reply = await router.invoke_chain(
        ["ghost", "secondary"],
        [{"role": "user", "content": "hi"}],
        policy=RetryPolicy(),
    )

    assert reply.provider == "secondary"
    assert reply.failures[0].provider == "ghost"
