"""
AETHERMIND Mesh Node

This node:
1. Keeps the agent/pathway graph with trust scores
2. Exposes an API for registration, pathways and usage reporting
3. Mints Neural Pathway Tokens on the pathway's home chain
4. Batches mesh events into Merkle roots for audit
"""
import asyncio
import json
import logging
from contextlib import asynccontextmanager
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from config import (
    API_HOST,
    API_PORT,
    AUDIT_ANCHOR_CHAIN,
    AUDIT_BATCH_SIZE,
    CHAIN_BACKEND,
    CHAIN_RPC_URLS,
    EVM_SENDER_ADDRESS,
    IDL_PATH,
    LOG_LEVEL,
    MESH_SETTINGS,
    NPT_CONTRACTS,
    NPT_METADATA_BASE_URL,
    PROGRAM_ID,
    SOLANA_RPC_URL,
    STATE_DIR,
    WALLET_PATH,
)
from chain_client import ChainAdapter, get_chain_adapter
from mesh import (
    AgentStatus,
    AuditTrail,
    ChainTimeoutError,
    ChainUnavailableError,
    ConflictError,
    EventChannel,
    EventType,
    FeatureDisabledError,
    InvalidRangeError,
    MeshCoordinator,
    MeshError,
    NotFoundError,
    Outcome,
    PathwayGraph,
    PathwayStatus,
    TokenizationBridge,
    TrustEngine,
    ValidationError,
    log_events,
)

logger = logging.getLogger(__name__)

VERSION = "0.1.0"
SNAPSHOT_FILE = "mesh.json"

_STATUS_CODES = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (FeatureDisabledError, 403),
    (InvalidRangeError, 422),
    (ValidationError, 422),
    (ChainUnavailableError, 503),
    (ChainTimeoutError, 504),
]


def status_code_for(error: MeshError) -> int:
    for error_type, code in _STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 500


# Pydantic models for API
class RegisterAgentRequest(BaseModel):
    """Request to register an agent"""
    name: str
    chain: str
    capabilities: list[str] = Field(default_factory=list)
    description: str = ""
    owner: Optional[str] = None
    metadata: dict = Field(default_factory=dict)
    trust_score: Optional[float] = None


class AgentUpdate(BaseModel):
    """Descriptive fields of an agent; omitted fields are left unchanged"""
    name: Optional[str] = None
    description: Optional[str] = None
    capabilities: Optional[list[str]] = None
    owner: Optional[str] = None
    metadata: Optional[dict] = None


class AgentStatusUpdate(BaseModel):
    status: AgentStatus


class CapabilityRequest(BaseModel):
    capability: str


class TrustOverride(BaseModel):
    trust_score: float


class EstablishPathwayRequest(BaseModel):
    """Request to connect two agents"""
    source_agent_id: str
    target_agent_id: str
    strength: float = 1.0
    bidirectional: bool = False
    metadata: dict = Field(default_factory=dict)


class StrengthUpdate(BaseModel):
    strength: float


class UsageReport(BaseModel):
    outcome: Optional[Outcome] = None


class GenerateTokenRequest(BaseModel):
    owner: Optional[str] = None
    chain: Optional[str] = None
    deadline: Optional[float] = Field(default=None, gt=0)
    wait_seconds: Optional[float] = Field(default=None, gt=0)


class DeployRequest(BaseModel):
    agent_id: str
    target_chain: str


class BridgeRequest(BaseModel):
    source_agent_id: str
    target_agent_id: str
    strength: float = 1.0
    bidirectional: bool = True
    metadata: dict = Field(default_factory=dict)


def _csv(value: Optional[str]) -> Optional[list[str]]:
    if not value:
        return None
    return [v.strip() for v in value.split(",") if v.strip()]


def create_app(
    coordinator: MeshCoordinator,
    bridge: Optional[TokenizationBridge] = None,
    audit: Optional[AuditTrail] = None,
    lifespan=None,
) -> FastAPI:
    """Build the HTTP surface over a coordinator (all routes close over it, no globals)."""
    app = FastAPI(
        title="AETHERMIND Mesh",
        description="Trust-weighted pathways between agents across chains",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.coordinator = coordinator
    app.state.bridge = bridge
    app.state.audit = audit

    @app.exception_handler(MeshError)
    async def mesh_error_handler(request: Request, exc: MeshError):
        code = status_code_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} -> {code}: {exc}")
        return JSONResponse(status_code=code, content={"error": exc.to_dict()})

    def _bridge() -> TokenizationBridge:
        if bridge is None:
            raise FeatureDisabledError("NPT minting")
        return bridge

    @app.get("/")
    async def root():
        return {
            "message": "AETHERMIND Mesh Node",
            "status": "running",
            "version": VERSION,
        }

    @app.get("/health")
    async def health():
        return {
            "status": "healthy",
            "agents": coordinator.graph.agent_count,
            "pathways": coordinator.graph.pathway_count,
            "npt_minting": bool(bridge and bridge.is_enabled),
            "cross_chain_bridge": coordinator.settings.cross_chain_bridge_enabled,
        }

    # -- Agents --

    @app.post("/agents", status_code=201)
    async def register_agent(request: RegisterAgentRequest):
        spec = request.model_dump(exclude_none=True)
        agent = coordinator.register_agent(spec)
        return agent.to_dict()

    @app.get("/agents")
    async def list_agents(
        capabilities: Optional[str] = None,
        min_trust_score: Optional[float] = None,
        chain: Optional[str] = None,
        status: Optional[AgentStatus] = None,
        owner: Optional[str] = None,
    ):
        agents = coordinator.query_agents(_csv(capabilities), min_trust_score, chain, status, owner)
        return {"count": len(agents), "agents": [a.to_dict() for a in agents]}

    @app.get("/agents/{agent_id}")
    async def get_agent(agent_id: str):
        return coordinator.get_agent(agent_id).to_dict()

    @app.put("/agents/{agent_id}")
    async def update_agent(agent_id: str, request: AgentUpdate):
        changes = request.model_dump(exclude_unset=True, exclude_none=True)
        return coordinator.update_agent(agent_id, changes).to_dict()

    @app.delete("/agents/{agent_id}")
    async def remove_agent(agent_id: str):
        coordinator.remove_agent(agent_id)
        return {"id": agent_id, "removed": True}

    @app.patch("/agents/{agent_id}/status")
    async def update_status(agent_id: str, request: AgentStatusUpdate):
        return coordinator.update_agent_status(agent_id, request.status).to_dict()

    @app.post("/agents/{agent_id}/capabilities")
    async def add_capability(agent_id: str, request: CapabilityRequest):
        return coordinator.add_capability(agent_id, request.capability).to_dict()

    @app.delete("/agents/{agent_id}/capabilities/{capability}")
    async def remove_capability(agent_id: str, capability: str):
        return coordinator.remove_capability(agent_id, capability).to_dict()

    @app.put("/agents/{agent_id}/trust")
    async def override_trust(agent_id: str, request: TrustOverride):
        return coordinator.override_trust(agent_id, request.trust_score).to_dict()

    @app.get("/agents/{agent_id}/connections")
    async def connections(agent_id: str, max_depth: int = 1, min_strength: float = 0.0):
        found = [
            {"agent": c.agent.to_dict(), "pathway": c.pathway.to_dict(), "depth": c.depth}
            for c in coordinator.find_connections(agent_id, max_depth, min_strength)
        ]
        return {"agent_id": agent_id, "count": len(found), "connections": found}

    @app.get("/agents/{agent_id}/identity/{chain}")
    async def resolve_identity(agent_id: str, chain: str):
        return coordinator.resolve_identity(agent_id, chain).to_dict()

    # -- Pathways --

    @app.post("/pathways", status_code=201)
    async def establish_pathway(request: EstablishPathwayRequest):
        pathway = coordinator.establish_pathway(
            request.source_agent_id,
            request.target_agent_id,
            strength=request.strength,
            bidirectional=request.bidirectional,
            metadata=request.metadata,
        )
        return pathway.to_dict()

    @app.get("/pathways")
    async def list_pathways(
        source_agent_id: Optional[str] = None,
        target_agent_id: Optional[str] = None,
        min_strength: Optional[float] = None,
        bidirectional: Optional[bool] = None,
        status: Optional[PathwayStatus] = None,
        cross_chain: Optional[bool] = None,
    ):
        pathways = coordinator.query_pathways(
            source_agent_id=source_agent_id,
            target_agent_id=target_agent_id,
            min_strength=min_strength,
            bidirectional=bidirectional,
            status=status,
            cross_chain=cross_chain,
        )
        return {"count": len(pathways), "pathways": [p.to_dict() for p in pathways]}

    @app.get("/pathways/{pathway_id}")
    async def get_pathway(pathway_id: str):
        return coordinator.get_pathway(pathway_id).to_dict()

    @app.post("/pathways/{pathway_id}/usage")
    async def record_usage(pathway_id: str, request: UsageReport):
        pathway = await coordinator.record_usage(pathway_id, request.outcome)
        return pathway.to_dict()

    @app.put("/pathways/{pathway_id}/strength")
    async def update_strength(pathway_id: str, request: StrengthUpdate):
        pathway = await coordinator.update_strength(pathway_id, request.strength)
        return pathway.to_dict()

    @app.post("/pathways/{pathway_id}/deactivate")
    async def deactivate_pathway(pathway_id: str):
        return coordinator.deactivate_pathway(pathway_id).to_dict()

    # -- Tokens --

    @app.post("/pathways/{pathway_id}/token")
    async def generate_token(pathway_id: str, request: GenerateTokenRequest):
        record = await _bridge().generate_token(
            pathway_id,
            owner=request.owner,
            chain=request.chain,
            deadline=request.deadline,
            wait=request.wait_seconds,
        )
        return record.to_dict()

    @app.get("/pathways/{pathway_id}/token")
    async def token_status(pathway_id: str):
        return _bridge().record(pathway_id).to_dict()

    @app.get("/pathways/{pathway_id}/token/details")
    async def token_details(pathway_id: str):
        return await _bridge().token_details(pathway_id)

    @app.post("/pathways/{pathway_id}/token/reconcile")
    async def reconcile_token(pathway_id: str):
        record = await _bridge().reconcile(pathway_id)
        return record.to_dict()

    @app.put("/tokens/{token_id}/strength")
    async def update_token_strength(token_id: str, request: StrengthUpdate, chain: Optional[str] = None):
        pathway = coordinator.pathway_for_token(token_id, chain.lower() if chain else None)
        pathway = await coordinator.update_strength(pathway.id, request.strength)
        return {"token_id": token_id, "chain": pathway.token.chain, "pathway": pathway.to_dict()}

    # -- Cross-chain --

    @app.get("/cross-chain/status")
    async def cross_chain_status():
        return {
            "enabled": coordinator.settings.cross_chain_bridge_enabled,
            "chains": await coordinator.chain_status(),
        }

    @app.get("/cross-chain/agents/{chain}")
    async def agents_on_chain(chain: str):
        agents = coordinator.query_agents(chain=chain.lower())
        return {"chain": chain.lower(), "count": len(agents), "agents": [a.to_dict() for a in agents]}

    @app.post("/cross-chain/deploy", status_code=201)
    async def deploy_to_chain(request: DeployRequest):
        mirror, pathway = coordinator.deploy_to_chain(request.agent_id, request.target_chain)
        return {"agent": mirror.to_dict(), "pathway": pathway.to_dict()}

    @app.post("/cross-chain/bridge", status_code=201)
    async def bridge_agents(request: BridgeRequest):
        pathway = coordinator.bridge_agents(
            request.source_agent_id,
            request.target_agent_id,
            strength=request.strength,
            bidirectional=request.bidirectional,
            metadata=request.metadata,
        )
        return pathway.to_dict()

    @app.get("/cross-chain/pathways")
    async def cross_chain_pathways():
        pathways = coordinator.query_pathways(cross_chain=True)
        return {"count": len(pathways), "pathways": [p.to_dict() for p in pathways]}

    @app.get("/cross-chain/identities/reconcile")
    async def reconcile_identities():
        dangling = coordinator.reconcile_identities()
        return {"dangling": dangling, "count": len(dangling)}

    # -- Events / audit --

    @app.get("/events")
    async def recent_events(limit: int = 50, event_type: Optional[EventType] = None):
        events = coordinator.events.recent(limit, event_type)
        return {"count": len(events), "events": [e.to_dict() for e in events]}

    @app.get("/audit")
    async def audit_stats():
        if audit is None:
            return {"enabled": False}
        return {"enabled": True, **audit.get_stats()}

    @app.get("/audit/proof/{entry_hash}")
    async def audit_proof(entry_hash: str):
        proof = audit.get_proof_for_entry(entry_hash) if audit else None
        if proof is None:
            raise NotFoundError("Audit entry", entry_hash)
        return proof

    return app


def build_adapters() -> dict[str, ChainAdapter]:
    """One adapter per supported chain, from config."""
    adapters = {}
    for chain in MESH_SETTINGS.supported_chains:
        if CHAIN_BACKEND == "local":
            adapters[chain] = get_chain_adapter(chain, "local")
            continue
        try:
            if chain == "solana":
                adapter = get_chain_adapter(
                    chain,
                    CHAIN_BACKEND,
                    rpc_url=SOLANA_RPC_URL,
                    program_id=PROGRAM_ID,
                    idl_path=IDL_PATH,
                    wallet_path=WALLET_PATH,
                )
            else:
                adapter = get_chain_adapter(
                    chain,
                    CHAIN_BACKEND,
                    rpc_url=CHAIN_RPC_URLS[chain],
                    contract_address=NPT_CONTRACTS[chain],
                    sender_address=EVM_SENDER_ADDRESS,
                )
        except (ValueError, OSError) as e:
            logger.warning(f"{chain} adapter not configured: {e}")
            continue
        adapter.poll_interval = MESH_SETTINGS.confirm_poll_interval
        adapter.max_poll_interval = MESH_SETTINGS.confirm_max_poll_interval
        adapter.default_deadline = MESH_SETTINGS.confirm_deadline_seconds
        adapters[chain] = adapter
    return adapters


def build_mesh() -> tuple[MeshCoordinator, TokenizationBridge, AuditTrail]:
    graph = PathwayGraph(MESH_SETTINGS)
    events = EventChannel(MESH_SETTINGS.event_history_size, MESH_SETTINGS.subscriber_queue_size)
    adapters = build_adapters()
    bridge = TokenizationBridge(graph, adapters, events, MESH_SETTINGS, NPT_METADATA_BASE_URL)
    coordinator = MeshCoordinator(graph, TrustEngine(graph, MESH_SETTINGS), events, bridge, MESH_SETTINGS)
    audit = AuditTrail(
        anchor=adapters.get(AUDIT_ANCHOR_CHAIN) if AUDIT_ANCHOR_CHAIN else None,
        batch_size=AUDIT_BATCH_SIZE,
        storage_path=STATE_DIR / "audit",
    )
    return coordinator, bridge, audit


def node_lifespan(coordinator: MeshCoordinator, bridge: TokenizationBridge, audit: AuditTrail):
    """Startup: restore snapshot, start observers. Shutdown: drain, flush, save."""
    snapshot_path = STATE_DIR / SNAPSHOT_FILE

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=" * 60)
        logger.info("  AETHERMIND MESH NODE")
        logger.info("=" * 60)

        if snapshot_path.exists():
            with open(snapshot_path) as f:
                coordinator.restore(json.load(f))
            dangling = coordinator.reconcile_identities()
            if dangling:
                logger.warning(f"Dangling chain links after restore: {dangling}")

        tasks = [
            asyncio.create_task(log_events(coordinator.events.subscribe())),
            asyncio.create_task(audit.run(coordinator.events.subscribe())),
            asyncio.create_task(coordinator.run_trust_decay()),
        ]
        logger.info(f"Chain backend: {CHAIN_BACKEND} ({', '.join(sorted(bridge.adapters)) or 'none'})")
        logger.info(f"API server starting on http://{API_HOST}:{API_PORT}")

        yield

        await bridge.drain()
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await audit.flush(force=True)

        STATE_DIR.mkdir(parents=True, exist_ok=True)
        with open(snapshot_path, "w") as f:
            json.dump(coordinator.snapshot(), f, indent=2)
        logger.info(f"Mesh state saved to {snapshot_path}")

        for adapter in bridge.adapters.values():
            await adapter.disconnect()
        logger.info("Mesh node shutdown complete")

    return lifespan


@click.command()
@click.option("--host", default=API_HOST, help="API host")
@click.option("--port", default=API_PORT, type=int, help="API port")
def main(host: str, port: int):
    """Run the AETHERMIND mesh node"""
    logging.basicConfig(
        level=LOG_LEVEL,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    )
    coordinator, bridge, audit = build_mesh()
    app = create_app(coordinator, bridge, audit, lifespan=node_lifespan(coordinator, bridge, audit))
    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    main()
