import argparse
import asyncio
import io
import json
import pathlib
import shutil
import sys
import tempfile
import threading
import unittest
from contextlib import redirect_stdout
from unittest import mock

RUNTIME_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(RUNTIME_ROOT) not in sys.path:
    sys.path.insert(0, str(RUNTIME_ROOT))

from intents_agent import cli  # noqa: E402
from intents_agent.config import DEFAULT_CONTRACT_ADDRESS, DEFAULT_PREVIEW_FIELDS, load_config  # noqa: E402
from intents_agent.confirmation import TransactionRecord, TxStatus  # noqa: E402
from intents_agent.errors import ConfigError  # noqa: E402
from intents_agent.keystore import MemoryKeyStore  # noqa: E402
from intents_agent.preview import PreviewResult  # noqa: E402
from intents_agent.report import FailureReport, format_success  # noqa: E402
from intents_agent.signer import Signer  # noqa: E402

NATIVE = "0xEeeeeEeeeEeEeeEeEeEeeEEEeeeeEeeeeeeeEEeE"
SIGNER = Signer(address="0x1111111111111111111111111111111111111111", private_key_hex="11" * 32)
TX_HASH = "0x" + "ab" * 32


class ConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        cfg = load_config({"INTENTS_RPC_URL": "https://mainnet.base.org"})
        self.assertEqual(cfg.rpc_url, "https://mainnet.base.org")
        self.assertEqual(cfg.contract_address, DEFAULT_CONTRACT_ADDRESS)
        self.assertEqual(cfg.preview_fields, DEFAULT_PREVIEW_FIELDS)
        self.assertEqual(cfg.receipt_timeout_sec, 90)
        self.assertEqual(cfg.explorer_base_url, "https://basescan.org")

    def test_rpc_url_is_required(self) -> None:
        with self.assertRaises(ConfigError):
            load_config({})

    def test_invalid_values_are_rejected(self) -> None:
        base = {"INTENTS_RPC_URL": "https://rpc.example"}
        with self.assertRaises(ConfigError):
            load_config({**base, "INTENTS_CAST_RECEIPT_TIMEOUT_SEC": "soon"})
        with self.assertRaises(ConfigError):
            load_config({**base, "INTENTS_CAST_CALL_TIMEOUT_SEC": "0"})
        with self.assertRaises(ConfigError):
            load_config({**base, "INTENTS_CONTRACT_ADDRESS": "0x1234"})
        with self.assertRaises(ConfigError):
            load_config({**base, "INTENTS_PREVIEW_FIELDS": "action,amount"})

    def test_chain_config_file_supplies_defaults(self) -> None:
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        path = pathlib.Path(tmp) / "base.json"
        path.write_text(
            json.dumps(
                {
                    "rpc": {"primary": "", "fallback": "https://fallback.example"},
                    "explorer": {"name": "Blockscout", "baseUrl": "https://base.blockscout.com"},
                    "contracts": {"intentsEngine": "0x4444444444444444444444444444444444444444"},
                }
            ),
            encoding="utf-8",
        )
        cfg = load_config({"INTENTS_CHAIN_CONFIG": str(path), "INTENTS_EXPLORER_NAME": "Explorer"})
        self.assertEqual(cfg.rpc_url, "https://fallback.example")
        self.assertEqual(cfg.explorer_base_url, "https://base.blockscout.com")
        self.assertEqual(cfg.explorer_name, "Explorer")
        self.assertEqual(cfg.contract_address, "0x4444444444444444444444444444444444444444")


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = MemoryKeyStore()
        patcher = mock.patch.object(cli, "open_key_store", return_value=self.store)
        patcher.start()
        self.addCleanup(patcher.stop)
        env = mock.patch.dict(cli.os.environ, {"INTENTS_RPC_URL": "https://rpc.example"}, clear=False)
        env.start()
        self.addCleanup(env.stop)
        tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, tmp, ignore_errors=True)
        self.app_dir = pathlib.Path(tmp) / ".intents-agent"
        app_dir = mock.patch.object(cli, "default_app_dir", return_value=self.app_dir)
        app_dir.start()
        self.addCleanup(app_dir.stop)

    def _run_and_parse_stdout(self, argv: list[str]) -> tuple[int, dict]:
        buf = io.StringIO()
        with redirect_stdout(buf):
            code = cli.main(argv)
        self.assertIsInstance(code, int)
        raw = buf.getvalue().strip()
        self.assertTrue(raw, "expected JSON on stdout")
        return code, json.loads(raw)

    def _orchestrator_returning(self, outcome) -> mock.Mock:
        orchestrator = mock.Mock()
        orchestrator.execute = mock.AsyncMock(return_value=outcome)
        return orchestrator

    def test_json_flag_is_required(self) -> None:
        code, payload = self._run_and_parse_stdout(["account", "address", "--session", "s1"])
        self.assertEqual(code, 2)
        self.assertEqual(payload["code"], "missing_flag")

    def test_account_create_then_address(self) -> None:
        code, created = self._run_and_parse_stdout(["account", "create", "--session", "s1", "--json"])
        self.assertEqual(code, 0)
        self.assertTrue(created["ok"])

        code, address = self._run_and_parse_stdout(["account", "address", "--session", "s1", "--json"])
        self.assertEqual(code, 0)
        self.assertEqual(address["address"], created["address"])

    def test_account_create_refuses_overwrite(self) -> None:
        self.store.set("s1", SIGNER)
        code, payload = self._run_and_parse_stdout(["account", "create", "--session", "s1", "--json"])
        self.assertEqual(code, 2)
        self.assertEqual(payload["code"], "account_exists")
        self.assertEqual(self.store.get("s1"), SIGNER)

    def test_execute_without_account(self) -> None:
        code, payload = self._run_and_parse_stdout(["execute", "--session", "s1", "--intent", "send 1 ETH", "--json"])
        self.assertEqual(code, 1)
        self.assertEqual(payload["code"], "account_missing")

    def test_execute_success_payload(self) -> None:
        self.store.set("s1", SIGNER)
        preview = PreviewResult(action="0x01", amount=10**18, token=NATIVE, fields={"amount": 10**18, "token": NATIVE}, native_token=NATIVE)
        report = format_success(
            preview,
            TransactionRecord(tx_hash=TX_HASH, status=TxStatus.CONFIRMED, block_number=7),
            explorer_base_url="https://basescan.org",
            explorer_name="BaseScan",
        )
        orchestrator = self._orchestrator_returning(report)
        with mock.patch.object(cli.IntentOrchestrator, "from_config", return_value=orchestrator):
            code, payload = self._run_and_parse_stdout(["execute", "--session", "s1", "--intent", "send 1 ETH", "--json"])

        self.assertEqual(code, 0)
        self.assertEqual(payload["txHash"], TX_HASH)
        self.assertEqual(payload["explorerUrl"], f"https://basescan.org/tx/{TX_HASH}")
        self.assertEqual(payload["preview"]["amount"], "1000000000000000000")
        self.assertEqual(payload["blockNumber"], "7")
        self.assertEqual(payload["message"], report.render())
        orchestrator.execute.assert_awaited_once_with(SIGNER, "send 1 ETH")

    def test_execute_failure_payload(self) -> None:
        self.store.set("s1", SIGNER)
        failure = FailureReport(
            error_kind="AllowanceError",
            code="allowance_failed",
            message="Approve transaction did not confirm: reverted",
            state="previewed",
        )
        with mock.patch.object(cli.IntentOrchestrator, "from_config", return_value=self._orchestrator_returning(failure)):
            code, payload = self._run_and_parse_stdout(["execute", "--session", "s1", "--intent", "send 100 USDC", "--json"])

        self.assertEqual(code, 1)
        self.assertFalse(payload["ok"])
        self.assertEqual(payload["code"], "allowance_failed")
        self.assertEqual(payload["message"], "Error: Approve transaction did not confirm: reverted")
        self.assertEqual(payload["details"]["errorKind"], "AllowanceError")

    def test_execute_rejects_blank_intent(self) -> None:
        code, payload = self._run_and_parse_stdout(["execute", "--session", "s1", "--intent", "   ", "--json"])
        self.assertEqual(code, 2)
        self.assertEqual(payload["code"], "invalid_input")

    def test_execute_reports_config_errors(self) -> None:
        self.store.set("s1", SIGNER)
        with mock.patch.dict(cli.os.environ, {"INTENTS_RPC_URL": ""}, clear=False):
            code, payload = self._run_and_parse_stdout(["execute", "--session", "s1", "--intent", "send 1 ETH", "--json"])
        self.assertEqual(code, 1)
        self.assertEqual(payload["code"], "config_invalid")

    def test_preview_command(self) -> None:
        self.store.set("s1", SIGNER)
        preview = PreviewResult(action="0x01", amount=5, token=NATIVE, fields={"amount": 5, "token": NATIVE}, native_token=NATIVE)
        orchestrator = mock.Mock()
        orchestrator.preview = mock.AsyncMock(return_value=preview)
        with mock.patch.object(cli.IntentOrchestrator, "from_config", return_value=orchestrator):
            code, payload = self._run_and_parse_stdout(["preview", "--session", "s1", "--intent", "send 5 wei", "--json"])

        self.assertEqual(code, 0)
        self.assertTrue(payload["native"])
        self.assertEqual(payload["valueWei"], "5")

    def test_preview_unexpected_error_is_reported(self) -> None:
        self.store.set("s1", SIGNER)
        orchestrator = mock.Mock()
        orchestrator.preview = mock.AsyncMock(side_effect=OSError("Exec format error"))
        with mock.patch.object(cli.IntentOrchestrator, "from_config", return_value=orchestrator):
            code, payload = self._run_and_parse_stdout(["preview", "--session", "s1", "--intent", "send 5 wei", "--json"])

        self.assertEqual(code, 1)
        self.assertEqual(payload["code"], "unknown_error")
        self.assertEqual(payload["message"], "Error: Exec format error")

    def test_overlapping_executes_for_one_session_do_not_interleave(self) -> None:
        self.store.set("s1", SIGNER)
        events: list[str] = []
        first_entered = threading.Event()
        failure = FailureReport(error_kind="ExecutionError", code="execution_failed", message="stopped", state="allowance_skipped")

        async def slow_execute(signer, intent):
            events.append(f"start:{intent}")
            first_entered.set()
            await asyncio.sleep(0.2)
            events.append(f"end:{intent}")
            return failure

        orchestrator = mock.Mock()
        orchestrator.execute = mock.AsyncMock(side_effect=slow_execute)
        buf = io.StringIO()
        with mock.patch.object(cli.IntentOrchestrator, "from_config", return_value=orchestrator), redirect_stdout(buf):
            first = threading.Thread(target=cli.main, args=(["execute", "--session", "s1", "--intent", "send 1 ETH", "--json"],))
            second = threading.Thread(target=cli.main, args=(["execute", "--session", "s1", "--intent", "send 2 ETH", "--json"],))
            first.start()
            self.assertTrue(first_entered.wait(5))
            second.start()
            first.join(5)
            second.join(5)

        self.assertEqual(events, ["start:send 1 ETH", "end:send 1 ETH", "start:send 2 ETH", "end:send 2 ETH"])
        self.assertEqual(len(buf.getvalue().strip().splitlines()), 2)
        self.assertTrue((self.app_dir / f"{SIGNER.address.lower()}.lock").exists())


class KeyStoreWiringTests(unittest.TestCase):
    def test_missing_passphrase_is_reported(self) -> None:
        args = argparse.Namespace(session="s1", json=True)
        buf = io.StringIO()
        with mock.patch.dict(cli.os.environ, {"INTENTS_WALLET_PASSPHRASE": ""}, clear=False), redirect_stdout(buf):
            code = cli.cmd_account_address(args)
        self.assertEqual(code, 1)
        self.assertEqual(json.loads(buf.getvalue())["code"], "key_store_error")


if __name__ == "__main__":
    unittest.main()
