"""
topic-digest core package.

Modules
───────
models      — Pydantic data models (Topic, Source, Story, RefreshStatus, AppSettings)
errors      — exception hierarchy shared by the pipeline
validator   — syntactic source URL validation
store       — SQLite-backed storage (topics, sources, stories, settings, status)
status      — refresh status state machine + source failure policy
llm         — lazy Anthropic client returning decoded JSON
researcher  — Claude call proposing sources for a topic
summarizer  — Claude call condensing scraped text into stories
discovery   — validate + persist AI sources, keeping manual ones
fetcher     — bounded concurrent fetching and text extraction
scheduler   — background refresh loop and manual triggers
"""
