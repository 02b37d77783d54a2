"""Botticelli: multi-act narrative execution for LLM content generation.

Layers, leaves first:
  models      definition and execution types (pydantic)
  loader      TOML narrative parsing, NarrativeLibrary with cycle checks
  templates   {{previous}} / {{act}} / {{act.json.path}} placeholders
  resolver    input specs → content parts (text, media, bots, tables, sub-narratives)
  history     per-iteration conversation history with retention rules
  executor    NarrativeExecutor: carousel loop, driver calls, processor dispatch
  processors  JSON extraction and content-generation processors
  schema      table schema inference, templates and row validation
  storage     in-memory and JSON-file repositories
  llm         Driver protocol, HttpDriver (httpx), EchoDriver
  prompts     Handlebars rendering of completion transcripts
  bots        bot command registry and write detection
  config      config.json + env settings, driver and executor wiring

Outer surfaces: app/routes (FastAPI), mcp_server (FastMCP).
"""
