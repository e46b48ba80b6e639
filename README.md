# betstream

`betstream` is the backend of a live sports betting system. Bets, odds
changes, game events, settlements, fraud alerts and wallet transactions
travel as JSON messages on named topics. Events, users, bets and
transactions are stored in MongoDB, and Redis holds live odds, odds
history, market suspensions, idempotency keys and a per-user window of
recent bets.

## What is in the package

| Module | Purpose |
| --- | --- |
| `betstream.models` | Domain records (`Bet`, `Event`, `Market`, `Outcome`, `User`, `Transaction`, `Score`, `GameEvent`, `FraudAlert`, and the message records `BetPlacedMessage`, `BetSettledMessage`, `OddsUpdatedMessage`, `MarketSuspendedMessage`) and their enums, with `to_dict` / `from_dict`, `to_document` / `from_document` and `dumps` / `loads` for JSON and MongoDB documents |
| `betstream.ports` | The interfaces the services depend on (`BetRepository`, `EventRepository`, `UserRepository`, `TransactionRepository`, `OddsCache`, `IdempotencyCache`, `MarketSuspensionCache`, `FraudWindow`, `EventPublisher`) and `InsufficientBalanceError` |
| `betstream.config` | `Config`, `load_config` and the `Topic` names |
| `betstream.cache` | Redis-backed `RedisOddsCache`, `RedisIdempotencyCache`, `RedisMarketSuspensionCache` and `RedisFraudWindow` |
| `betstream.repository` | MongoDB-backed `MongoBetRepo`, `MongoEventRepo`, `MongoUserRepo` and `MongoTransactionRepo` |
| `betstream.messaging` | `Message`, the `MessageWriter` / `MessageReader` interfaces, `Producer`, which publishes every message type, and `Consumer`, which feeds messages to a handler and commits them once handled |
| `betstream.bet_processor` | `BetProcessor`: validates and books placed bets, pays out on settlement |
| `betstream.fraud` | `FraudProcessor` and its rules: `RateLimitRule`, `OppositeBetsRule`, `SuspiciousAmountRule` |
| `betstream.odds_engine` | `OddsEngine`: recalculates odds after goals, cards and match phases |
| `betstream.odds_processor` | `OddsProcessor`: caches new odds, tracks their velocity and suspends markets that move too fast |
| `betstream.api` | `create_app`, the HTTP API as a Flask application |
| `betstream.metrics` | In-process `Counter`, `Histogram` and `Registry`, the WSGI `MetricsMiddleware`, `metrics_app` and `start_metrics_server` |
| `betstream.seeder` | Demo users and events (`build_users`, `build_events`, `seed`) and the `betstream-seed` command |
| `betstream.simulator` | `GameState`, `generate_game_event` and `FeedSimulator`, which produces random game events for live matches |

## Configuration

`load_config` reads these environment variables and falls back to the
defaults shown when a variable is unset or empty:

| Variable | Default |
| --- | --- |
| `KAFKA_BROKERS` | `localhost:9092` |
| `REDIS_ADDR` | `localhost:6379` |
| `MONGO_URI` | `mongodb://localhost:27017/betting` |
| `HTTP_PORT` | `8080` |
| `METRICS_PORT` | `9100` |

The seeder uses the MongoDB database `betting`, with the collections
`users`, `events`, `bets` and `transactions`.

## Seeding demo data

```
betstream-seed
```

This drops the four collections and creates two users (`william` with a
balance of 1000.00, `testuser` with 500.00) and three live events
(Flamengo vs Palmeiras, Barcelona vs Real Madrid, Lakers vs Celtics),
each with a match-winner and an over/under market. The starting odds of
every outcome are written to Redis, and each outcome is registered under
its event so that `RedisOddsCache.get_event_odds` finds it. The command
exits with status 1 if storing a user or an event fails.

## The HTTP API

`create_app(bets, events, users, transactions, odds, publisher)` builds the
Flask application from a bet repository, an event repository, a user
repository, a transaction repository, an odds cache and a publisher. Every
request is counted and timed by `MetricsMiddleware`.

| Method and path | Result |
| --- | --- |
| `POST /api/v1/bets` | Publishes a placed bet; `202` with `bet_id`, `correlation_id` and status `ACCEPTED` |
| `GET /api/v1/bets?user_id=...` | The user's bets |
| `GET /api/v1/bets/<id>` | One bet, or `404` |
| `GET /api/v1/events` | All events |
| `GET /api/v1/events/<id>` | One event, each outcome enriched with `live_odds` when known |
| `GET /api/v1/events/<id>/odds` | Live odds of the event, keyed by outcome id |
| `GET /api/v1/wallet?user_id=...` | Balance and transactions (`MongoTransactionRepo` returns the 50 latest, newest first) |
| `POST /api/v1/admin/settle` | Publishes settlement of a market and marks it `SETTLED`; `202` with status `SETTLEMENT_QUEUED` |
| `POST /api/v1/admin/event-status` | Changes an event's status |
| `GET /metrics` | Metrics in the Prometheus text format |

A bet request carries `user_id`, `event_id`, `market_id`, `outcome_id`,
`stake` and `odds`; a body that is not a JSON object gives `400` with
`invalid request`, and a missing field or a non-positive stake or odds
gives `400` with `missing required fields`.

## How a bet is processed

`BetProcessor.handle_bet_placed` rejects a bet when its idempotency key was
seen in the last 60 seconds, when its market is suspended, when the cached
odds differ from the requested odds by more than 5 %, or when the user's
balance does not cover the stake. Otherwise the stake is debited, the bet is
stored as `PENDING` and a `BET_PLACED` transaction is saved and published.

On settlement, `BetProcessor.handle_bet_settled` marks each pending bet of
the market `WON` or `LOST`, credits winners with their potential payout and
records a `BET_WON` transaction for each.

`FraudProcessor.handle_bet_placed` looks at the user's bets of the last five
minutes and raises an alert for more than five of them in the last 60
seconds, for a bet on a different outcome of the same event, or for a stake
above ten times the user's average (once three or more recent bets exist).

`OddsEngine.handle_game_event` publishes new odds, rounded to cents and never
below 1.01, for every outcome of the event's open markets.

`OddsProcessor.handle_odds_updated` caches the new odds and suspends the
market for 30 seconds when the mean absolute change percentage of the
outcome's last ten odds moves exceeds 20.

## Running a service

A consumer is wired from a reader, a topic, a group id and a handler, and
runs until a `threading.Event` is set:

```python
import threading

from betstream.config import Topic
from betstream.messaging import Consumer, Producer

producer = Producer(writer)            # any MessageWriter
processor = OddsProcessor(odds_cache, suspension_cache, producer)
consumer = Consumer(reader, Topic.ODDS_UPDATED, "odds-cache-updater",
                    processor.handle_odds_updated)
stop = threading.Event()
consumer.run(stop)
```

`start_metrics_server(port)` serves `/metrics` from a background thread.

## What the package does not do

- It contains no client for a message broker. `Producer` and `Consumer`
  work through the `MessageWriter` and `MessageReader` interfaces, and an
  implementation of them has to be supplied.
- Apart from `betstream-seed` it installs no commands: the API, the
  processors and the feed simulator are started from your own code, for
  instance by serving `create_app(...)` with any WSGI server and calling
  `Consumer.run` or `FeedSimulator.run`.

## Running the tests

Install the `test` extra and run pytest from the project directory.