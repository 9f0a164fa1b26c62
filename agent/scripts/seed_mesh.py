"""Seed a running mesh node with a small three-agent, two-chain topology."""
import asyncio
import sys

import click
import httpx

AGENTS = [
    {"name": "Atlas", "chain": "ethereum", "capabilities": ["routing", "pricing"]},
    {"name": "Borealis", "chain": "ethereum", "capabilities": ["pricing"]},
    {"name": "Cygnus", "chain": "solana", "capabilities": ["settlement"]},
]


async def seed(base_url: str, mint: bool) -> int:
    async with httpx.AsyncClient(base_url=base_url, timeout=30.0) as http:
        ids = []
        for spec in AGENTS:
            resp = await http.post("/agents", json=spec)
            resp.raise_for_status()
            agent = resp.json()
            ids.append(agent["id"])
            print(f"  {agent['name']:<10} {agent['id']} ({agent['chain']})")

        a, b, c = ids
        pathways = []
        for source, target, strength in [(a, b, 0.9), (a, c, 0.7)]:
            resp = await http.post("/pathways", json={
                "source_agent_id": source,
                "target_agent_id": target,
                "strength": strength,
            })
            resp.raise_for_status()
            pathway = resp.json()
            pathways.append(pathway["id"])
            kind = "cross-chain" if pathway["metadata"].get("type") == "cross-chain" else "local"
            print(f"  {pathway['id']}: {source} -> {target} ({strength}, {kind})")

        resp = await http.get(f"/agents/{a}/connections", params={"max_depth": 1, "min_strength": 0.8})
        resp.raise_for_status()
        strong = [conn["agent"]["name"] for conn in resp.json()["connections"]]
        print(f"Strong connections of Atlas: {strong}")

        if mint:
            resp = await http.post(f"/pathways/{pathways[0]}/token", json={})
            if resp.status_code != 200:
                print(f"Mint refused: {resp.json()['error']['message']}")
                return 1
            record = resp.json()
            print(f"NPT for {pathways[0]}: {record['state']} token={record['token_id']}")
    return 0


@click.command()
@click.option("--url", default="http://localhost:8000", help="Mesh node base URL")
@click.option("--mint/--no-mint", default=True, help="Mint a token for the first pathway")
def main(url: str, mint: bool):
    """Register demo agents and pathways on a mesh node"""
    sys.exit(asyncio.run(seed(url, mint)))


if __name__ == "__main__":
    main()
