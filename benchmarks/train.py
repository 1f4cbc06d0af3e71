"""
MNIST Training Harness
======================

Train the benchmark MLP on MNIST with any optimiser from the command line.

Usage:
    # Quick sanity check
    python benchmarks/train.py --optimiser adam --lr 1e-3

    # Load config from YAML (CLI flags override it)
    python benchmarks/train.py --config benchmarks/configs/mnist_mlp.yaml --optimiser radam

Results are saved to results/<model>_<dataset>_<optimiser>_<timestamp>.json
"""

import argparse
import json
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

import torch
import torch.nn as nn

# Add project root to path
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from models import get_model
from optimisers import LBFGS, get_optimiser, list_optimisers, load_config

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dataset loaders
# ---------------------------------------------------------------------------


def get_dataloaders(dataset: str, batch_size: int, num_workers: int = 2):
    """Get train and test dataloaders for MNIST.

    Returns:
        (train_loader, test_loader)
    """
    if dataset != "mnist":
        raise ValueError(f"Unknown dataset: {dataset}. Available: mnist")

    try:
        from torchvision import datasets, transforms
    except ImportError:
        raise ImportError("MNIST requires: pip install torchvision") from None

    transform = transforms.Compose([
        transforms.ToTensor(),
        transforms.Normalize((0.1307,), (0.3081,)),
    ])
    train_ds = datasets.MNIST("data", train=True, download=True, transform=transform)
    test_ds = datasets.MNIST("data", train=False, transform=transform)
    train_loader = torch.utils.data.DataLoader(
        train_ds, batch_size=batch_size, shuffle=True, num_workers=num_workers,
    )
    test_loader = torch.utils.data.DataLoader(
        test_ds, batch_size=batch_size, shuffle=False, num_workers=num_workers,
    )
    return train_loader, test_loader


# ---------------------------------------------------------------------------
# Training and evaluation loops
# ---------------------------------------------------------------------------


def train_one_epoch(model, loader, optimiser, device):
    """Train one epoch. Returns (avg_loss, accuracy)."""
    model.train()
    total_loss = 0.0
    correct = 0
    total = 0

    for data, target in loader:
        data, target = data.to(device), target.to(device)

        if isinstance(optimiser, LBFGS):
            # L-BFGS re-evaluates the model during its line search
            def closure():
                optimiser.zero_grad()
                loss = nn.functional.cross_entropy(model(data), target)
                loss.backward()
                return loss

            loss = optimiser.step(closure)
            with torch.no_grad():
                output = model(data)
        else:
            optimiser.zero_grad()
            output = model(data)
            loss = nn.functional.cross_entropy(output, target)
            loss.backward()
            optimiser.step()

        total_loss += loss.item() * data.size(0)
        correct += output.argmax(dim=1).eq(target).sum().item()
        total += data.size(0)

    return total_loss / total, correct / total


@torch.no_grad()
def evaluate(model, loader, device):
    """Evaluate model. Returns (avg_loss, accuracy)."""
    model.eval()
    total_loss = 0.0
    correct = 0
    total = 0

    for data, target in loader:
        data, target = data.to(device), target.to(device)
        output = model(data)
        loss = nn.functional.cross_entropy(output, target)

        total_loss += loss.item() * data.size(0)
        correct += output.argmax(dim=1).eq(target).sum().item()
        total += data.size(0)

    return total_loss / total, correct / total


def resolve_settings(args, config: dict) -> dict:
    """Merge YAML config and CLI args; CLI wins when given."""
    optimiser_kwargs = dict(config.get("optimiser_kwargs", {}))
    lr = args.lr if args.lr is not None else config.get("lr")
    if lr is not None:
        optimiser_kwargs["lr"] = lr
    weight_decay = args.weight_decay if args.weight_decay is not None else config.get("weight_decay")
    if weight_decay is not None:
        optimiser_kwargs["weight_decay"] = weight_decay
    return {
        "model": args.model or config.get("model", "mlp"),
        "dataset": args.dataset or config.get("dataset", "mnist"),
        "optimiser": args.optimiser or config.get("optimiser", "adam"),
        "optimiser_kwargs": optimiser_kwargs,
        "batch_size": args.batch_size or config.get("batch_size", 128),
        "epochs": args.epochs or config.get("epochs", 10),
    }


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Optimiser MNIST benchmark")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config file.")
    parser.add_argument("--model", type=str, default=None, help="Model name.")
    parser.add_argument("--dataset", type=str, default=None, help="Dataset name.")
    parser.add_argument(
        "--optimiser", type=str, default=None, choices=list_optimisers(), help="Optimiser name.",
    )
    parser.add_argument("--lr", type=float, default=None, help="Learning rate (overrides config).")
    parser.add_argument("--weight-decay", type=float, default=None, help="Weight decay.")
    parser.add_argument("--batch-size", type=int, default=None, help="Batch size.")
    parser.add_argument("--epochs", type=int, default=None, help="Number of epochs.")
    parser.add_argument("--device", type=str, default="auto", help="Device (auto/cpu/cuda).")
    parser.add_argument("--seed", type=int, default=42, help="Random seed.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    config = load_config(args.config) if args.config else {}
    settings = resolve_settings(args, config)

    # Device
    if args.device == "auto":
        device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    else:
        device = torch.device(args.device)

    # Seed
    torch.manual_seed(args.seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(args.seed)

    logger.info(
        f"Model: {settings['model']} | Dataset: {settings['dataset']} | "
        f"Optimiser: {settings['optimiser']}"
    )
    logger.info(
        f"Optimiser kwargs: {settings['optimiser_kwargs']} | "
        f"Batch: {settings['batch_size']} | Epochs: {settings['epochs']}"
    )
    logger.info(f"Device: {device}")

    model = get_model(settings["model"]).to(device)
    num_params = sum(p.numel() for p in model.parameters())
    logger.info(f"Model parameters: {num_params:,}")

    optimiser = get_optimiser(settings["optimiser"], model.parameters(), **settings["optimiser_kwargs"])
    train_loader, test_loader = get_dataloaders(settings["dataset"], settings["batch_size"])

    results = {**settings, "num_params": num_params, "history": []}
    start_time = time.time()

    for epoch in range(1, settings["epochs"] + 1):
        epoch_start = time.time()
        train_loss, train_acc = train_one_epoch(model, train_loader, optimiser, device)
        test_loss, test_acc = evaluate(model, test_loader, device)
        epoch_time = time.time() - epoch_start

        logger.info(
            f"Epoch {epoch}/{settings['epochs']} | "
            f"Train Loss: {train_loss:.4f} Acc: {train_acc:.4f} | "
            f"Test Loss: {test_loss:.4f} Acc: {test_acc:.4f} | "
            f"Time: {epoch_time:.1f}s"
        )
        results["history"].append({
            "epoch": epoch,
            "train_loss": train_loss,
            "train_acc": train_acc,
            "test_loss": test_loss,
            "test_acc": test_acc,
            "epoch_time": epoch_time,
        })

    total_time = time.time() - start_time
    results["total_time"] = total_time
    logger.info(f"Training complete in {total_time:.1f}s")

    results_dir = Path("results")
    results_dir.mkdir(exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    result_file = (
        results_dir
        / f"{settings['model']}_{settings['dataset']}_{settings['optimiser']}_{timestamp}.json"
    )
    with open(result_file, "w") as f:
        json.dump(results, f, indent=2)
    logger.info(f"Results saved to {result_file}")


if __name__ == "__main__":
    main()
