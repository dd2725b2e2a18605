"""Local sandbox: a fully wired in-process deployment.

Builds tokens, simulated vaults, a fixed-rate router and the position
ledger on a LocalChain from the ``simulation`` config section, funds the
configured users and opens their positions. The CLI ``simulate`` command
and the tests run the whole pipeline against it.
"""

from dataclasses import dataclass, field
from fractions import Fraction
from typing import Any, Dict, List, Optional

from src.decision.engine import VaultInfo
from src.execution.local_client import InProcessLedgerClient
from src.gateways.swap_gateway import LocalSwapGateway
from src.gateways.yield_oracle import StaticYieldOracle
from src.ledger.chain import LocalChain
from src.ledger.position_ledger import PositionLedger
from src.ledger.router import SimulatedSwapRouter
from src.ledger.vault import SimulatedVault
from src.utils.exceptions import ConfigurationError
from src.utils.logging import get_logger
from src.utils.units import parse_units

logger = get_logger(__name__)

DEFAULT_SIMULATION: Dict[str, Any] = {
    "chain_id": 999,
    "fee_bps": 0,
    "signer": "owner",
    "tokens": [
        {"symbol": "USDC", "decimals": 6},
        {"symbol": "USDT", "decimals": 6},
    ],
    "vaults": [
        {"name": "usdc-core", "asset": "USDC", "apy": 3.0},
        {"name": "usdc-plus", "asset": "USDC", "apy": 4.2},
        {"name": "usdt-prime", "asset": "USDT", "apy": 5.5},
    ],
    "swap_rates": [
        {"from": "USDC", "to": "USDT", "rate": 0.999},
        {"from": "USDT", "to": "USDC", "rate": 0.999},
    ],
    "router_reserves": 10_000_000,
    "users": [
        {"name": "alice", "deposits": [{"vault": "usdc-core", "amount": 1000}]},
        {"name": "bob", "deposits": [{"vault": "usdc-core", "amount": 250}]},
    ],
}


@dataclass
class Sandbox:
    """Handles to everything deployed by :func:`build_sandbox`."""

    chain: LocalChain
    ledger: PositionLedger
    router: SimulatedSwapRouter
    owner: str
    keeper: str
    client: InProcessLedgerClient
    oracle: StaticYieldOracle
    swap_gateway: LocalSwapGateway
    tokens: Dict[str, str] = field(default_factory=dict)
    vaults: Dict[str, SimulatedVault] = field(default_factory=dict)
    users: Dict[str, str] = field(default_factory=dict)

    def vault_infos(self) -> List[VaultInfo]:
        """Whitelisted vaults in whitelist order."""
        by_address = {v.address: name for name, v in self.vaults.items()}
        return [
            VaultInfo(address=address, asset=self.ledger.vault_asset(address), name=by_address.get(address, ""))
            for address in self.ledger.whitelisted_vaults()
        ]

    def deposit(self, user: str, vault: str, amount: int, min_shares_out: int = 0) -> int:
        """Mint ``amount`` of the vault's asset to ``user`` and deposit it.

        Args:
            user: User address
            vault: Vault name or address
            amount: Raw amount
        """
        target = self.vaults[vault] if vault in self.vaults else self.chain.get_contract(vault, SimulatedVault)
        asset = target.asset()
        self.chain.tokens.mint(asset, user, amount)
        self.chain.tokens.approve(asset, user, self.ledger.address, amount)
        return self.ledger.deposit(user, target.address, amount, min_shares_out)


def build_sandbox(config: Optional[Dict[str, Any]] = None) -> Sandbox:
    """Deploy and fund a sandbox.

    Args:
        config: ``simulation`` section (missing keys fall back to
            DEFAULT_SIMULATION)

    Raises:
        ConfigurationError: If vaults, rates or deposits reference unknown
            tokens or vaults
    """
    settings = dict(DEFAULT_SIMULATION)
    settings.update(config or {})

    chain = LocalChain(chain_id=settings["chain_id"])
    owner = chain.derive_address("governance")
    keeper = chain.derive_address("keeper")

    tokens: Dict[str, str] = {}
    for token in settings["tokens"]:
        tokens[token["symbol"]] = chain.create_token(token["symbol"], decimals=token.get("decimals", 18))

    ledger = PositionLedger(
        chain,
        chain.derive_address("ledger"),
        owner=owner,
        fee_bps=settings.get("fee_bps", 0),
    )
    ledger.set_keeper(owner, keeper, True)

    oracle = StaticYieldOracle()
    vaults: Dict[str, SimulatedVault] = {}
    for entry in settings["vaults"]:
        symbol = entry["asset"]
        if symbol not in tokens:
            raise ConfigurationError(f"Vault {entry['name']} uses unknown token {symbol}")
        vault = SimulatedVault(
            chain,
            chain.derive_address(f"vault:{entry['name']}"),
            asset=tokens[symbol],
            name=entry["name"],
        )
        vaults[entry["name"]] = vault
        ledger.set_vault_whitelist(owner, vault.address, True)
        oracle.set_yield(vault.address, entry.get("apy", 0.0))

    router = SimulatedSwapRouter(chain, chain.derive_address("router"))
    for rate in settings.get("swap_rates", []):
        if rate["from"] not in tokens or rate["to"] not in tokens:
            raise ConfigurationError(f"Swap rate references unknown token: {rate}")
        decimals_in = chain.tokens.decimals(tokens[rate["from"]])
        decimals_out = chain.tokens.decimals(tokens[rate["to"]])
        raw_rate = Fraction(str(rate["rate"])) * Fraction(10) ** (decimals_out - decimals_in)
        router.set_rate(tokens[rate["from"]], tokens[rate["to"]], raw_rate)

    reserves = settings.get("router_reserves", 0)
    for address in tokens.values():
        chain.tokens.mint(address, router.address, parse_units(reserves, chain.tokens.decimals(address)))

    signer = owner if settings.get("signer", "owner") == "owner" else keeper
    sandbox = Sandbox(
        chain=chain,
        ledger=ledger,
        router=router,
        owner=owner,
        keeper=keeper,
        client=InProcessLedgerClient(ledger, signer=signer),
        oracle=oracle,
        swap_gateway=LocalSwapGateway(router),
        tokens=tokens,
        vaults=vaults,
    )

    for user in settings.get("users", []):
        address = chain.derive_address(f"user:{user['name']}")
        sandbox.users[user["name"]] = address
        for deposit in user.get("deposits", []):
            if deposit["vault"] not in vaults:
                raise ConfigurationError(f"Deposit into unknown vault {deposit['vault']}")
            vault = vaults[deposit["vault"]]
            amount = parse_units(deposit["amount"], chain.tokens.decimals(vault.asset()))
            sandbox.deposit(address, deposit["vault"], amount)

    logger.info(
        "Sandbox ready: %d tokens, %d vaults, %d users (signer: %s)",
        len(tokens),
        len(vaults),
        len(sandbox.users),
        "owner" if signer == owner else "keeper",
    )
    return sandbox
