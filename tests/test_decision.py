import asyncio

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from monitoring.telegram import TelegramNotifier
from signals.decision import (
    CloseIntent, HoldDecisionGenerator, HttpDecisionGenerator, OpenIntent,
    parse_decision_text, parse_intents,
)

SYMBOLS = ['BTC', 'ETH']


@pytest.mark.parametrize('text', [
    'open BTC long at 8x leverage with 50 USDT',
    'BTC long: 50 USDT at 8x',
    'BTC long 50 USDT 8x',
    'Execute BTC long, amount 50 USDT, leverage 8x',
])
def test_open_phrasings(text):
    assert parse_decision_text(text, SYMBOLS) == [OpenIntent('BTC', 'long', 8, 50.0)]


@pytest.mark.parametrize('text', ['close ETH position', 'ETH close now', 'exit ETH'])
def test_close_phrasings(text):
    assert parse_decision_text(text, SYMBOLS) == [CloseIntent('ETH')]


def test_prose_without_intents():
    assert parse_decision_text('Markets are choppy, holding everything.', SYMBOLS) == []


def test_structured_intents_drop_malformed():
    intents = parse_intents([
        {'action': 'open', 'symbol': 'btc', 'side': 'SHORT', 'leverage': 7, 'amount': 20},
        {'action': 'close', 'symbol': 'eth', 'percentage': 50},
        {'action': 'open', 'symbol': 'BTC'},
        {'action': 'hedge', 'symbol': 'BTC'},
    ])
    assert intents == [OpenIntent('BTC', 'short', 7, 20), CloseIntent('ETH', 50)]


@pytest.mark.asyncio
async def test_hold_generator_never_trades():
    decision = await HoldDecisionGenerator().decide({})
    assert decision.intents == []


@pytest.mark.asyncio
async def test_http_generator_posts_snapshot():
    seen = []

    async def handler(request):
        seen.append((request.headers.get('Authorization'), await request.json()))
        return web.json_response({'rationale': 'trend up',
                                  'intents': [{'action': 'open', 'symbol': 'BTC', 'side': 'long',
                                               'leverage': 8, 'amount': 50}]})

    app = web.Application()
    app.router.add_post('/decide', handler)
    async with TestServer(app) as server:
        generator = HttpDecisionGenerator(str(server.make_url('/decide')), SYMBOLS, api_key='k')
        try:
            decision = await generator.decide({'iteration': 4})
        finally:
            await generator.close()

    assert seen == [('Bearer k', {'iteration': 4})]
    assert decision.rationale == 'trend up'
    assert decision.intents == [OpenIntent('BTC', 'long', 8, 50)]


@pytest.mark.asyncio
async def test_http_generator_falls_back_to_text():
    async def handler(request):
        return web.json_response({'rationale': 'Taking profit: exit BTC'})

    app = web.Application()
    app.router.add_post('/decide', handler)
    async with TestServer(app) as server:
        generator = HttpDecisionGenerator(str(server.make_url('/decide')), SYMBOLS)
        try:
            decision = await generator.decide({})
        finally:
            await generator.close()
    assert decision.intents == [CloseIntent('BTC')]


@pytest.mark.asyncio
async def test_notifier_without_credentials_is_silent():
    notifier = TelegramNotifier('', '')
    assert not notifier.enabled
    await notifier.notify_close('BTC', 'long', 12.5, 'TRAILING_STOP')


@pytest.mark.asyncio
async def test_scheduled_notification_released_when_done():
    notifier = TelegramNotifier('', '')
    task = notifier.schedule(notifier.notify_halt('test'))
    assert task in notifier._pending
    await task
    await asyncio.sleep(0)
    assert not notifier._pending
