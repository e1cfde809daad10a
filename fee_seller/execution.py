import asyncio
import inspect
import logging
import time
from typing import Dict, Any, Optional, Tuple

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3, AsyncHTTPProvider
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .config import FeeSellerConfig
from .errors import ChainError, ConfigError, FeeSellerError, InsufficientOutputError, OperationTimeoutError
from .models import FeeBalance, SaleQuote, TokenBalance, wei_to_eth

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ERC20_ABI = [
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "decimals", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "uint8"}]},
    {"name": "symbol", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "string"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"name": "", "type": "uint256"}]},
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"name": "", "type": "bool"}]},
]

UNISWAP_V2_ROUTER_ABI = [
    {"name": "WETH", "type": "function", "stateMutability": "pure",
     "inputs": [], "outputs": [{"name": "", "type": "address"}]},
    {"name": "factory", "type": "function", "stateMutability": "pure",
     "inputs": [], "outputs": [{"name": "", "type": "address"}]},
    {"name": "getAmountsOut", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
    {"name": "swapExactTokensForETH", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "amountOutMin", "type": "uint256"},
                {"name": "path", "type": "address[]"}, {"name": "to", "type": "address"},
                {"name": "deadline", "type": "uint256"}],
     "outputs": [{"name": "amounts", "type": "uint256[]"}]},
]

UNISWAP_V2_FACTORY_ABI = [
    {"name": "getPair", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "tokenA", "type": "address"}, {"name": "tokenB", "type": "address"}],
     "outputs": [{"name": "pair", "type": "address"}]},
]

UNISWAP_V2_PAIR_ABI = [
    {"name": "getReserves", "type": "function", "stateMutability": "view",
     "inputs": [],
     "outputs": [{"name": "reserve0", "type": "uint112"}, {"name": "reserve1", "type": "uint112"},
                 {"name": "blockTimestampLast", "type": "uint32"}]},
    {"name": "token0", "type": "function", "stateMutability": "view",
     "inputs": [], "outputs": [{"name": "", "type": "address"}]},
]

class ChainClient:
    """
    Reads fee balances and submits sale and transfer transactions over web3
    """

    def __init__(self, config: FeeSellerConfig, w3: Optional[AsyncWeb3] = None):
        """
        Initialize the chain client

        Args:
            config: Fee seller configuration
            w3: Pre-built web3 instance (optional, built from WEB3_URL if not provided)
        """
        self.config = config
        self.rpc_timeout = config.rpc_timeout_seconds
        self.confirmation_timeout = config.confirmation_timeout_seconds

        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(
            config.web3_url,
            request_kwargs={"timeout": aiohttp.ClientTimeout(total=config.rpc_timeout_seconds)}
        ))
        self.account = Account.from_key(config.fee_account_private_key)
        self.address = self.account.address
        self.router_address = AsyncWeb3.to_checksum_address(config.router_address)

        self._token_meta: Dict[str, Tuple[str, int]] = {}
        self._weth: Optional[str] = None
        self._factory: Optional[str] = None

        logger.info(f"Initialized ChainClient on {config.eth_network} for fee account {self.address}")

    async def _call(self, awaitable, action: str, timeout: Optional[float] = None):
        """
        Await a web3 call with a timeout, translating failures into fee seller errors

        Args:
            awaitable: Coroutine performing the call
            action: Human readable description used in error messages
            timeout: Seconds to wait (default: RPC timeout)

        Returns:
            Result of the call

        Raises:
            OperationTimeoutError: If the call does not finish in time
            InsufficientOutputError: If the router rejects the output bound
            ChainError: For any other RPC or execution failure
        """
        timeout = timeout or self.rpc_timeout
        try:
            return await asyncio.wait_for(awaitable, timeout)
        except FeeSellerError:
            raise
        except (asyncio.TimeoutError, TimeExhausted) as e:
            raise OperationTimeoutError(f"{action} timed out after {timeout}s") from e
        except ContractLogicError as e:
            if "INSUFFICIENT_OUTPUT_AMOUNT" in str(e):
                raise InsufficientOutputError(f"{action} rejected by router: {e}") from e
            raise ChainError(f"{action} reverted: {e}") from e
        except (Web3Exception, aiohttp.ClientError, ValueError, OSError) as e:
            raise ChainError(f"{action} failed: {e}") from e

    def _contract(self, address: str, abi):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(address), abi=abi)

    async def verify_network(self) -> int:
        """
        Check that the RPC endpoint serves the configured network

        Returns:
            int: Chain id reported by the node

        Raises:
            ConfigError: If the chain id does not match ETH_NETWORK
        """
        chain_id = await self._call(self.w3.eth.chain_id, "chain id lookup")
        if chain_id != self.config.chain_id:
            raise ConfigError(
                f"WEB3_URL serves chain id {chain_id}, but ETH_NETWORK={self.config.eth_network} "
                f"expects {self.config.chain_id}"
            )
        logger.info(f"Connected to {self.config.eth_network} (chain id {chain_id})")
        return chain_id

    async def get_eth_balance(self) -> int:
        """Get the fee account ETH balance in wei"""
        return await self._call(self.w3.eth.get_balance(self.address), "ETH balance lookup")

    async def _token_metadata(self, token_address: str) -> Tuple[str, int]:
        if token_address not in self._token_meta:
            token = self._contract(token_address, ERC20_ABI)
            decimals = await self._call(token.functions.decimals().call(), f"decimals of {token_address}")
            try:
                symbol = await self._call(token.functions.symbol().call(), f"symbol of {token_address}")
            except ChainError:
                # Some tokens return bytes32 symbols
                symbol = token_address[:10]
            self._token_meta[token_address] = (symbol, decimals)
        return self._token_meta[token_address]

    async def get_token_balance(self, token_address: str) -> TokenBalance:
        """Get the fee account balance of one ERC-20 token"""
        symbol, decimals = await self._token_metadata(token_address)
        token = self._contract(token_address, ERC20_ABI)
        amount = await self._call(token.functions.balanceOf(self.address).call(),
                                  f"{symbol} balance lookup")
        return TokenBalance(address=token_address, symbol=symbol, decimals=decimals, amount=amount)

    async def get_fee_balance(self) -> FeeBalance:
        """
        Get a snapshot of the fee account holdings

        Returns:
            FeeBalance: ETH balance plus every configured fee token balance
        """
        eth_wei = await self.get_eth_balance()
        tokens = []
        for token_address in self.config.fee_tokens:
            tokens.append(await self.get_token_balance(token_address))

        logger.debug(f"Fee balance: {wei_to_eth(eth_wei)} ETH, "
                     f"{', '.join(f'{t.units} {t.symbol}' for t in tokens) or 'no tokens'}")
        return FeeBalance(eth_wei=eth_wei, tokens=tokens)

    async def _router_addresses(self) -> Tuple[str, str]:
        if self._weth is None or self._factory is None:
            router = self._contract(self.router_address, UNISWAP_V2_ROUTER_ABI)
            self._weth = await self._call(router.functions.WETH().call(), "router WETH lookup")
            self._factory = await self._call(router.functions.factory().call(), "router factory lookup")
        return self._weth, self._factory

    async def quote_sale(self, token: TokenBalance) -> SaleQuote:
        """
        Quote selling a full token balance for ETH

        Args:
            token: Token balance to sell

        Returns:
            SaleQuote: Mid-price reference value and router output for the balance
        """
        weth, factory_address = await self._router_addresses()
        factory = self._contract(factory_address, UNISWAP_V2_FACTORY_ABI)
        pair_address = await self._call(factory.functions.getPair(token.address, weth).call(),
                                        f"{token.symbol}/WETH pair lookup")
        if pair_address == ZERO_ADDRESS:
            raise ChainError(f"No {token.symbol}/WETH pool on the router")

        pair = self._contract(pair_address, UNISWAP_V2_PAIR_ABI)
        reserve0, reserve1, _ = await self._call(pair.functions.getReserves().call(),
                                                 f"{token.symbol}/WETH reserves lookup")
        token0 = await self._call(pair.functions.token0().call(), f"{token.symbol}/WETH token0 lookup")
        if token0.lower() == token.address.lower():
            token_reserve, eth_reserve = reserve0, reserve1
        else:
            token_reserve, eth_reserve = reserve1, reserve0
        if token_reserve == 0 or eth_reserve == 0:
            raise ChainError(f"{token.symbol}/WETH pool has no liquidity")

        router = self._contract(self.router_address, UNISWAP_V2_ROUTER_ABI)
        amounts = await self._call(
            router.functions.getAmountsOut(token.amount, [token.address, weth]).call(),
            f"{token.symbol} sale quote"
        )

        quote = SaleQuote(
            token=token,
            amount_in=token.amount,
            reference_out=token.amount * eth_reserve // token_reserve,
            expected_out=amounts[-1],
        )
        logger.debug(f"Quote for {token.units} {token.symbol}: reference "
                     f"{wei_to_eth(quote.reference_out)} ETH, expected {wei_to_eth(quote.expected_out)} ETH")
        return quote

    async def _next_nonce(self) -> int:
        return await self._call(self.w3.eth.get_transaction_count(self.address, "pending"), "nonce lookup")

    async def _send(self, tx: Dict[str, Any], action: str) -> Tuple[str, Dict[str, Any]]:
        """
        Sign, broadcast and wait for a transaction

        Returns:
            tuple: Transaction hash (hex) and receipt
        """
        signed = self.account.sign_transaction(tx)
        tx_hash = await self._call(self.w3.eth.send_raw_transaction(signed.raw_transaction),
                                   f"{action} broadcast")
        tx_hex = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Submitted {action}: {tx_hex}")

        receipt = await self._call(
            self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self.confirmation_timeout),
            f"{action} confirmation",
            timeout=self.confirmation_timeout + self.rpc_timeout,
        )
        if receipt["status"] != 1:
            raise ChainError(f"{action} reverted in transaction {tx_hex}")
        return tx_hex, receipt

    async def _ensure_allowance(self, token: TokenBalance) -> None:
        erc20 = self._contract(token.address, ERC20_ABI)
        allowance = await self._call(
            erc20.functions.allowance(self.address, self.router_address).call(),
            f"{token.symbol} allowance lookup"
        )
        if allowance >= token.amount:
            return

        logger.info(f"Approving router to spend {token.units} {token.symbol}")
        tx = await self._call(
            erc20.functions.approve(self.router_address, token.amount).build_transaction({
                "from": self.address,
                "nonce": await self._next_nonce(),
            }),
            f"{token.symbol} approval build"
        )
        await self._send(tx, f"{token.symbol} approval")

    async def sell_token(self, quote: SaleQuote, min_output: int) -> Tuple[str, int]:
        """
        Sell a token balance for ETH on the router

        Args:
            quote: Quote for the balance being sold
            min_output: Minimum ETH out in wei, enforced by the router

        Returns:
            tuple: Transaction hash and ETH proceeds in wei, excluding gas
        """
        token = quote.token
        weth, _ = await self._router_addresses()
        await self._ensure_allowance(token)

        balance_before = await self.get_eth_balance()
        router = self._contract(self.router_address, UNISWAP_V2_ROUTER_ABI)
        deadline = int(time.time() + self.confirmation_timeout)
        tx = await self._call(
            router.functions.swapExactTokensForETH(
                quote.amount_in, min_output, [token.address, weth], self.address, deadline
            ).build_transaction({
                "from": self.address,
                "nonce": await self._next_nonce(),
            }),
            f"{token.symbol} sale build"
        )
        tx_hash, receipt = await self._send(tx, f"{token.symbol} sale")

        balance_after = await self.get_eth_balance()
        gas_cost = receipt["gasUsed"] * receipt["effectiveGasPrice"]
        proceeds = balance_after - balance_before + gas_cost

        logger.info(f"Sold {token.units} {token.symbol} for {wei_to_eth(proceeds)} ETH in {tx_hash}")
        return tx_hash, proceeds

    async def transfer_eth(self, amount: int, destination: str) -> str:
        """
        Transfer ETH from the fee account

        Args:
            amount: Amount in wei
            destination: Receiving address

        Returns:
            str: Transaction hash
        """
        tx = {
            "from": self.address,
            "to": AsyncWeb3.to_checksum_address(destination),
            "value": amount,
            "nonce": await self._next_nonce(),
            "chainId": self.config.chain_id,
            "gasPrice": await self._call(self.w3.eth.gas_price, "gas price lookup"),
        }
        tx["gas"] = await self._call(self.w3.eth.estimate_gas(tx), "transfer gas estimate")

        tx_hash, _ = await self._send(tx, "ETH transfer")
        logger.info(f"Transferred {wei_to_eth(amount)} ETH to {destination} in {tx_hash}")
        return tx_hash

    async def close(self):
        """
        Release the HTTP session held by the provider
        """
        disconnect = getattr(self.w3.provider, "disconnect", None)
        if disconnect is not None:
            result = disconnect()
            if inspect.isawaitable(result):
                await result
