# examples/example_digits_classification.py
"""
Digit Classification using clear_convnet

This script trains a small convolutional network on the sklearn digits dataset
(8x8 grayscale images of the digits 0-9), one example at a time, with the
Trainer (adadelta unless --method says otherwise).

Main steps:
1. Load the sklearn digits dataset (8x8 pixel images)
2. Convert every image into a Tensor of shape (8, 8, 1), values in [0, 1]
3. Declare the network as a list of layer definitions
4. Train for a few epochs, evaluating on the test split after each one
   (--eval-only skips training and evaluates a previously saved model)
5. Save the trained network to JSON and load it back
6. Plot the training loss and test accuracy
"""

import argparse
import logging
import os
import sys
import time

import matplotlib.pyplot as plt
import numpy as np

from clear_convnet import Network, Tensor, Trainer
from clear_convnet.config import TRAINER_METHODS

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')


def load_sklearn_digits():
    try:
        from sklearn.datasets import load_digits
        from sklearn.model_selection import train_test_split
    except ImportError:
        print("Error: scikit-learn is required. pip install scikit-learn")
        sys.exit(1)
    print("Loading Scikit-learn digits dataset...")
    digits = load_digits()
    X, y = digits.data, digits.target
    print(f"Dataset loaded. X shape: {X.shape}, y shape: {y.shape}")
    X_train, X_test, y_train, y_test = train_test_split(X, y, test_size=0.2, random_state=42, stratify=y)
    print(f"Split into Train: {X_train.shape}, Test: {X_test.shape}")
    return (X_train, y_train), (X_test, y_test)


def to_tensors(X):
    """Each 64-pixel row becomes an (8, 8, 1) Tensor; digits pixel values are 0-16."""
    tensors = []
    for row in X:
        T = Tensor(8, 8, 1, 0.0)
        T.w[:] = row / 16.0
        tensors.append(T)
    return tensors


def evaluate(net, X, y):
    correct = 0
    for V, label in zip(X, y):
        net.forward(V)
        correct += int(net.get_prediction() == label)
    return correct / len(X)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description='Digit classification with clear_convnet')
    parser.add_argument('--epochs', type=int, default=5, help='Number of passes over the training set')
    parser.add_argument('--method', choices=TRAINER_METHODS, default='adadelta',
                        help='Trainer update rule')
    parser.add_argument('--eval-only', action='store_true',
                        help='Skip training and evaluate the saved model')
    args = parser.parse_args()

    # --- Configuration ---
    EPOCHS = args.epochs
    MODEL_SAVE_PATH = 'digits_convnet.json'
    NUM_CLASSES = 10
    PRINT_EVERY_N_EXAMPLES = 250
    SEED = 42

    # --- 1. Load Data ---
    (X_train_raw, y_train), (X_test_raw, y_test) = load_sklearn_digits()

    # --- 2. Preprocess Data ---
    X_train = to_tensors(X_train_raw)
    X_test = to_tensors(X_test_raw)

    # --- 3. Define the network ---
    # conv 3x3, pad 1: (8 + 2 - 3)/1 + 1 = 8 -> (8, 8, 8)
    # pool 2x2, stride 2: (8 - 2)/2 + 1 = 4  -> (4, 4, 8)
    # conv 3x3, pad 1                        -> (4, 4, 16)
    # pool 2x2, stride 2                     -> (2, 2, 16)
    layer_defs = [
        {'type': 'input', 'out_sx': 8, 'out_sy': 8, 'out_depth': 1},
        {'type': 'conv', 'sx': 3, 'filters': 8, 'stride': 1, 'pad': 1, 'activation': 'relu'},
        {'type': 'pool', 'sx': 2, 'stride': 2},
        {'type': 'conv', 'sx': 3, 'filters': 16, 'stride': 1, 'pad': 1, 'activation': 'relu'},
        {'type': 'pool', 'sx': 2, 'stride': 2},
        {'type': 'softmax', 'num_classes': NUM_CLASSES},
    ]

    # --- 4. Initialize or load the model ---
    if args.eval_only:
        if not os.path.exists(MODEL_SAVE_PATH):
            print("\nERROR: Cannot run in evaluation-only mode - no model file found.")
            print(f"Please ensure {MODEL_SAVE_PATH} exists or run without --eval-only.")
            sys.exit(1)
        net = Network.load(MODEL_SAVE_PATH)
        print(net.summary())
        print(f"Test Accuracy: {evaluate(net, X_test, y_test) * 100:.2f}%")
        sys.exit(0)

    net = Network(layer_defs, rng=SEED)
    print(net.summary())

    trainer = Trainer(net, method=args.method, batch_size=10, l2_decay=0.001)

    # --- 5. Training Loop ---
    print("\n--- Starting Training ---")
    rng = np.random.default_rng(SEED)
    start_time_total = time.time()

    train_losses = []
    test_accuracies = []

    for epoch in range(EPOCHS):
        epoch_start_time = time.time()
        epoch_loss = 0.0
        fwd_ms = 0.0
        bwd_ms = 0.0

        for i, idx in enumerate(rng.permutation(len(X_train))):
            stats = trainer.train(X_train[idx], int(y_train[idx]))
            epoch_loss += stats['loss']
            fwd_ms += stats['fwd_time']
            bwd_ms += stats['bwd_time']
            if (i + 1) % PRINT_EVERY_N_EXAMPLES == 0:
                print(f"  Epoch {epoch+1}/{EPOCHS} | Example {i+1}/{len(X_train)} | "
                      f"Avg Loss: {epoch_loss / (i + 1):.4f}")

        average_epoch_loss = epoch_loss / len(X_train)
        train_losses.append(average_epoch_loss)

        test_accuracy = evaluate(net, X_test, y_test)
        test_accuracies.append(test_accuracy)

        print(f"\nEpoch {epoch+1} completed.")
        print(f"  Average Training Loss: {average_epoch_loss:.4f}")
        print(f"  Forward / Backward per example: {fwd_ms / len(X_train):.2f}ms / {bwd_ms / len(X_train):.2f}ms")
        print(f"  Epoch Duration: {time.time() - epoch_start_time:.2f}s")
        print(f"  Test Accuracy: {test_accuracy * 100:.2f}%")
        print("-" * 30)

    print("\n--- Training Finished ---")
    print(f"Total Training Time: {time.time() - start_time_total:.2f}s")

    # --- 6. Save, reload and compare ---
    net.save(MODEL_SAVE_PATH)
    restored = Network.load(MODEL_SAVE_PATH)
    print(f"Restored network test accuracy: {evaluate(restored, X_test, y_test) * 100:.2f}%")

    predictions = []
    for V in X_test[:10]:
        net.forward(V)
        predictions.append(net.get_prediction())
    print("\nExample Predictions (first 10 test samples):")
    print(f"  Predicted: {np.array(predictions)}")
    print(f"  Actual:    {y_test[:10]}")

    # --- Plotting ---
    plt.figure(figsize=(12, 5))
    plt.subplot(1, 2, 1)
    plt.plot(range(1, EPOCHS + 1), train_losses, label='Training Loss', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Loss')
    plt.legend()
    plt.title('Training Loss over Epochs')
    plt.grid(True)

    plt.subplot(1, 2, 2)
    plt.plot(range(1, EPOCHS + 1), test_accuracies, label='Test Accuracy', color='orange', marker='o')
    plt.xlabel('Epoch')
    plt.ylabel('Accuracy')
    plt.ylim(0, 1.05)
    plt.legend()
    plt.title('Test Accuracy over Epochs')
    plt.grid(True)

    plt.tight_layout()
    plt.show()
