"""
Bot-vs-bot conversation engine for local OpenAI-compatible servers.

Modules:
- states: bots, messages, conversation records, run sessions
- stream: event-stream decoding + response classification
- llm: completion client (via the gateway) + cancel token
- agents: TurnGenerator (one streamed turn with non-streaming fallback)
- manager: ConversationScheduler (full-auto / semi-auto / manual)
- store, library: persisted conversations
- gateway: pass-through proxy to the upstream server
"""
